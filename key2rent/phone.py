import re

from key2rent.errors import ValidationError

MSISDN_PATTERN = re.compile(r"^254[71]\d{8}$")


def format_phone_number(phone: str) -> str:
    """Normalise a Kenyan mobile number to 2547XXXXXXXX / 2541XXXXXXXX."""
    cleaned = re.sub(r"[\s\-+]", "", phone or "")

    if cleaned.startswith("0"):
        cleaned = "254" + cleaned[1:]

    if cleaned.startswith("7") or cleaned.startswith("1"):
        cleaned = "254" + cleaned

    if not MSISDN_PATTERN.fullmatch(cleaned):
        raise ValidationError("Invalid Kenyan phone number format")

    return cleaned
