import re
import unicodedata

from .errors import InvalidPhoneFormat


_STRIP_RE = re.compile(r"[\s\-().]")
_INTERNATIONAL_RE = re.compile(r"^\+\d{8,15}$", re.ASCII)
_LOCAL_RE = re.compile(r"^0(\d{9})$", re.ASCII)


def normalize_digits(value: str) -> str:
    """Translate any Unicode decimal digit (Arabic-Indic, Persian, ...) to ASCII."""
    out = []
    for ch in value:
        if not ("0" <= ch <= "9") and ch.isdigit():
            digit = unicodedata.decimal(ch, None)
            if digit is not None:
                out.append(str(digit))
                continue
        out.append(ch)
    return "".join(out)


def normalize_phone_e164(phone: str, default_country_code: str = "972") -> str:
    """Normalize phone numbers to E.164.

    Accepts an already international number (+XXXXXXXX), a local number with
    a leading zero (05XXXXXXXX) and the international form without its plus
    sign (9725XXXXXXXX). Anything else raises InvalidPhoneFormat.
    """
    cc = (default_country_code or "").lstrip("+")
    raw = _STRIP_RE.sub("", normalize_digits(phone or ""))
    if not raw:
        raise InvalidPhoneFormat("Phone is required")
    if raw.startswith("+"):
        if _INTERNATIONAL_RE.match(raw):
            return raw
        raise InvalidPhoneFormat("Invalid phone format. Use +<country><number>")
    m = _LOCAL_RE.match(raw)
    if m and cc:
        return f"+{cc}{m.group(1)}"
    if cc and re.fullmatch(re.escape(cc) + r"\d{9}", raw, re.ASCII):
        return "+" + raw
    raise InvalidPhoneFormat(
        f"Invalid phone format. Use +{cc}XXXXXXXXX or local 0XXXXXXXXX"
    )


def mask_phone(phone: str, visible_digits: int = 2) -> str:
    if not phone:
        return ""
    if len(phone) <= visible_digits:
        return phone
    masked_portion = "*" * max(len(phone) - visible_digits, 0)
    return masked_portion + phone[-visible_digits:]
