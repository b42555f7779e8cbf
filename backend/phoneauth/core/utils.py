import re
from datetime import datetime, timezone

E164_RE = re.compile(r"^\+[1-9]\d{1,14}$")


def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def is_e164(phone_number: str | None) -> bool:
    return bool(phone_number) and bool(E164_RE.match(phone_number))


def mask_phone_number(phone_number: str) -> str:
    """+919876543210 -> +XXXXXXXX3210. Only the last four digits stay visible."""
    if len(phone_number) <= 4:
        return phone_number
    return re.sub(r"\d", "X", phone_number[:-4]) + phone_number[-4:]
