from __future__ import annotations

import re

WHATSAPP_JID_SUFFIX = "@c.us"
DEFAULT_COUNTRY_CODE = "62"


class PhoneNumberError(ValueError):
    """Raised when a WhatsApp recipient cannot be canonicalized."""


def _normalize_digits(raw: str, country_code: str) -> str:
    digits = re.sub(r"\D", "", raw)
    if not digits:
        raise PhoneNumberError("empty")
    if digits.startswith("0"):
        digits = f"{country_code}{digits[1:]}"
    if len(digits) < 8 or len(digits) > 15:
        raise PhoneNumberError("invalid_length")
    return digits


def format_phone_number(
    value: str | int, *, country_code: str = DEFAULT_COUNTRY_CODE
) -> str:
    """Canonicalize a phone number into a WhatsApp chat id.

    Parameters
    ----------
    value:
        Recipient in ``+E164`` format, local format with a leading ``0``,
        plain digits or an existing JID (``<digits>@c.us``).
    country_code:
        Digits replacing a leading ``0`` of a local number.

    Returns
    -------
    str
        ``<digits>@c.us``.

    Raises
    ------
    PhoneNumberError
        If the value cannot be parsed or validated. Unlike a lenient
        formatter this never invents an id; the command gateway reports such
        recipients as unreachable without asking the engine.
    """

    if value is None:
        raise PhoneNumberError("empty")

    if isinstance(value, int):
        raw = str(value)
    else:
        raw = str(value).strip()

    if not raw:
        raise PhoneNumberError("empty")

    local_part = raw
    if "@" in raw:
        if not raw.lower().endswith(WHATSAPP_JID_SUFFIX):
            raise PhoneNumberError("invalid_domain")
        local_part = raw.split("@", 1)[0]
    digits = _normalize_digits(local_part, country_code)
    return f"{digits}{WHATSAPP_JID_SUFFIX}"


__all__ = ["format_phone_number", "PhoneNumberError", "WHATSAPP_JID_SUFFIX"]
