"""Helper utility functions."""

import re
from typing import Optional

from app.core.config import settings

# Trunk prefixes that stand in for the country code in national dialing
_NATIONAL_PREFIXES = {"RU": ("8", "+7"), "KZ": ("8", "+7")}


def normalize_phone(phone: Optional[str], country_code: Optional[str] = None) -> Optional[str]:
    """Normalize phone number to E.164 format.

    ``89161234567``, ``8 (916) 123-45-67`` and ``9161234567`` all become
    ``+79161234567`` for RU.
    """
    if not phone:
        return None

    # Remove all non-digit characters except +
    cleaned = re.sub(r"[^\d+]", "", phone)
    if not cleaned or cleaned == "+":
        return None
    if cleaned.startswith("+"):
        return cleaned

    country = (country_code or settings.carrier_country_code).upper()
    trunk, prefix = _NATIONAL_PREFIXES.get(country, ("", "+"))

    if trunk and cleaned.startswith(trunk) and len(cleaned) == 11:
        return prefix + cleaned[1:]
    if prefix == "+7" and len(cleaned) == 10:
        return prefix + cleaned
    return "+" + cleaned


def mask_phone(phone: str) -> str:
    """Mask phone number for logging (privacy)."""
    if not phone or len(phone) < 4:
        return "***"

    return "***" + phone[-4:]


def format_duration(seconds: int) -> str:
    """``125`` -> ``2:05``; hours are shown only when needed."""
    seconds = max(0, int(seconds))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"
