import logging

from phoneauth.core.utils import mask_phone_number

_PHONE_FIELDS = {"phone", "phone_number"}


def log_auth_event(
    logger: logging.Logger,
    *,
    event: str,
    level: int = logging.INFO,
    **fields,
) -> None:
    chunks = [f"event={event}"]
    for key, value in fields.items():
        if value is None:
            continue
        if key in _PHONE_FIELDS:
            value = mask_phone_number(str(value))
        chunks.append(f"{key}={value}")
    logger.log(level, "auth_event %s", " ".join(chunks))
