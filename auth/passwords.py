"""
auth/passwords.py -- Credential verification and bcrypt hashing.

Using bcrypt directly rather than passlib[bcrypt]: passlib's wrap-bug detection
builds a password longer than 72 bytes, which bcrypt 4.x rejects. Direct usage
has no compatibility shim.

Legacy credentials: the first version of the application stored passwords
verbatim. Those rows carry the LegacyPlaintext tag; a successful match signals
needs_upgrade so the authority re-hashes and persists a Hashed credential.
After that the legacy branch is never taken again for the account. A legacy
mismatch still runs a dummy bcrypt check so response time does not reveal
which accounts are legacy.

Passwords are compared and hashed with surrounding whitespace removed;
normalize_new_password() applies the same rule to every newly set password.
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass

import bcrypt

from auth.errors import InvalidPassword
from auth.models import Hashed, LegacyPlaintext, PasswordCredential


@dataclass(frozen=True)
class Verification:
    valid: bool
    needs_upgrade: bool = False


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt silently truncates at 72 bytes; the API layer caps password length
    at 255 characters.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def check_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the database
        return False


# Timing equalization dummy hash [C1]. Computed once at import so the first
# unknown-username attempt is not measurably faster than the rest.
_DUMMY_HASH: str = hash_password("session_authority_timing_dummy")


def burn_verification(plain: str) -> None:
    """Run a bcrypt check whose result is discarded.

    Called when the username does not exist so the response time matches a
    wrong-password attempt and does not reveal which usernames are real.
    """
    check_password(plain, _DUMMY_HASH)


def verify(submitted: str, credential: PasswordCredential) -> Verification:
    """Check a submitted password against a stored credential."""
    if isinstance(credential, LegacyPlaintext):
        matched = hmac.compare_digest(submitted.strip().encode("utf-8"), credential.value.strip().encode("utf-8"))
        if not matched:
            # A miss must cost a bcrypt check, same as an unknown username [C1]
            burn_verification(submitted)
        return Verification(valid=matched, needs_upgrade=matched)
    if isinstance(credential, Hashed):
        return Verification(valid=check_password(submitted, credential.value))
    raise TypeError(f"Unsupported credential type: {type(credential).__name__}")


def upgraded(submitted: str) -> Hashed:
    """Return the Hashed credential that replaces a matched legacy one."""
    return Hashed(hash_password(submitted.strip()))


def normalize_new_password(plain: str) -> str:
    """Strip a newly chosen password the way login strips submitted ones.

    Raises InvalidPassword when nothing is left, since a blank password could
    never be entered at the login form.
    """
    cleaned = plain.strip()
    if not cleaned:
        raise InvalidPassword()
    return cleaned
