"""auth/stepup.py -- Decide whether a password login needs an emailed code."""

from __future__ import annotations

from auth.models import User, UserDevice


def requires_otp(
    user: User,
    device: UserDevice | None,
    device_supplied: bool,
    last_country: str | None,
    current_country: str | None,
) -> bool:
    """Return True if any risk signal is present.

    Signals: the account always requires a code; the client sent no device
    id; the device is unknown or untrusted; the login comes from a different
    country than the last successful one (only when both are known).

    Whether a code can actually be delivered is the caller's concern.
    """
    if user.require_email_otp:
        return True
    if not device_supplied:
        return True
    if device is None or not device.trusted:
        return True
    return bool(last_country and current_country and last_country != current_country)
