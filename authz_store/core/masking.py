"""Masking helpers for identifiers that end up in structured logs."""

from __future__ import annotations

import re

_EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9+_.-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
_PHONE_PATTERN = re.compile(r"^\d{3}-\d{3,4}-\d{4}$|^\d{10,11}$")
MASK_CHAR = "*"


def mask_principal(value: str | None) -> str | None:
    """Mask an email, phone number, or generic principal name for logging."""
    if value is None:
        return None
    if _EMAIL_PATTERN.match(value):
        return _mask_email(value)
    if _PHONE_PATTERN.match(value):
        return _mask_phone(value)
    return _mask_general(value)


def _mask_email(email: str) -> str:
    local_part, domain = email.split("@", 1)
    if len(local_part) <= 2:
        masked_local = MASK_CHAR * len(local_part)
    else:
        masked_local = local_part[0] + MASK_CHAR * (len(local_part) - 2) + local_part[-1]
    return f"{masked_local}@{domain}"


def _mask_phone(phone: str) -> str:
    digits = phone.replace("-", "")
    if len(digits) == 10:
        return f"{digits[:3]}-{MASK_CHAR * 3}-{digits[6:]}"
    if len(digits) == 11:
        return f"{digits[:3]}-{MASK_CHAR * 4}-{digits[7:]}"
    return _mask_general(phone)


def _mask_general(value: str) -> str:
    if len(value) <= 2:
        return MASK_CHAR * len(value)
    if len(value) <= 4:
        return value[0] + MASK_CHAR * (len(value) - 1)
    return value[:2] + MASK_CHAR * (len(value) - 4) + value[-2:]
