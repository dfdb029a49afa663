import os
import re
from typing import Optional

DEFAULT_COUNTRY_CODE = os.environ.get("DEFAULT_COUNTRY_CODE", "91").strip().lstrip("+") or "91"

_E164_PATTERN = re.compile(r"^\+?[1-9]\d{1,14}$")
_SEPARATORS = re.compile(r"[\s\-()]")


class InvalidPhoneNumber(ValueError):
    pass


def normalize_phone(raw: Optional[str], default_country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """Canonical E.164 form used for every stored and looked-up phone."""
    text = _SEPARATORS.sub("", str(raw or ""))
    if not text:
        raise InvalidPhoneNumber("Phone number is required")
    if text.startswith("00"):
        text = f"+{text[2:]}"
    if not text.startswith("+"):
        if len(text) == 11 and text.startswith("0"):
            text = text[1:]
        if len(text) == 10:
            text = f"{default_country_code}{text}"
    if not _E164_PATTERN.match(text):
        raise InvalidPhoneNumber("Please provide a valid phone number with country code")
    return text if text.startswith("+") else f"+{text}"


def provider_digits(phone: str) -> str:
    return phone.lstrip("+")


def national_suffix(phone: str, length: int = 10) -> str:
    digits = re.sub(r"\D", "", phone or "")
    return digits[-length:]


def mask_phone(phone: Optional[str]) -> str:
    return re.sub(r"\d(?=\d{4})", "*", phone or "")
