from __future__ import annotations

import re
from typing import Optional

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
# 11 digit mobile numbers, e.g. 01712345678
PHONE_RE = re.compile(r"^01\d{9}$", re.ASCII)
MIN_PASSWORD_LENGTH = 6


def is_valid_email(email: Optional[str]) -> bool:
    return bool(email) and EMAIL_RE.match(str(email).strip()) is not None


def is_valid_phone(phone: Optional[str]) -> bool:
    return bool(phone) and PHONE_RE.match(str(phone).strip()) is not None


def is_valid_otp_code(code: Optional[str], length: int = 6) -> bool:
    code = str(code or "")
    return len(code) == int(length) and code.isascii() and code.isdigit()


def password_problem(password: Optional[str]) -> Optional[str]:
    """Returns a provider reason code, or None when the password is acceptable."""
    if not password:
        return "weak_password"
    if len(password) < MIN_PASSWORD_LENGTH:
        return "weak_password"
    return None


def normalize_email(email: Optional[str]) -> str:
    return str(email or "").strip().lower()
