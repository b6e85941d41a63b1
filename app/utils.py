import re

IVORIAN_PREFIX = "225"


def digits_only(phone: str | None) -> str:
    return re.sub(r"\D", "", phone or "")


def format_ivorian_phone(phone: str | None) -> str:
    """Normalize a Côte d'Ivoire number to +225 followed by the national number.

    Accepts the 10-digit plan (leading 0) and the legacy 8-digit plan.
    A 9-digit number missing its leading 0 is repaired. Anything else
    returns an empty string.
    """
    digits = digits_only(phone)
    if digits.startswith(IVORIAN_PREFIX) and len(digits) > 10:
        digits = digits[len(IVORIAN_PREFIX):]

    if len(digits) == 9 and not digits.startswith("0"):
        digits = f"0{digits}"

    is_new_format = len(digits) == 10 and digits.startswith("0")
    is_legacy_format = len(digits) == 8
    if not is_new_format and not is_legacy_format:
        return ""
    return f"+{IVORIAN_PREFIX}{digits}"


def format_msisdn(phone: str | None, dialing_code: str) -> str:
    """Digits-only MSISDN with the country dialing code, as push APIs expect."""
    digits = digits_only(phone)
    if not digits:
        return ""
    if digits.startswith(dialing_code):
        return digits
    return f"{dialing_code}{digits}"


def mask_phone(phone: str | None) -> str:
    """Mask a phone number for logs: keep the last 4 digits."""
    digits = digits_only(phone)
    if len(digits) <= 4:
        return "****"
    return "*" * (len(digits) - 4) + digits[-4:]
