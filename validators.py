"""Boundary validation and normalization of caller-supplied filter values."""
import logging
import re
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from error_handler import InvalidArgumentError

logger = logging.getLogger(__name__)

DEVICE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
DEVICE_ID_MAX_LENGTH = 100

RequestT = TypeVar("RequestT", bound=BaseModel)


def validate_device_id(value: str) -> str:
    """
    Check the device id format.

    Raises:
        ValueError: if the id is empty, too long, or contains characters
            other than letters, digits, underscores and hyphens
    """
    if not value:
        raise ValueError("Device ID is required")
    if len(value) > DEVICE_ID_MAX_LENGTH:
        raise ValueError(f"Device ID must be {DEVICE_ID_MAX_LENGTH} characters or less")
    if not DEVICE_ID_PATTERN.match(value):
        raise ValueError("Device ID can only contain alphanumeric characters, underscores, and hyphens")
    return value


def split_csv(value: Any) -> Optional[List[str]]:
    """
    Normalize a multi-valued filter into a list of strings.

    Accepts None, a single scalar, a comma-separated string, or an iterable
    (whose items may themselves be comma-separated). Blank entries are
    dropped; an empty result means "no constraint" and becomes None.
    """
    if value is None:
        return None
    if isinstance(value, str):
        raw: Iterable[Any] = [value]
    elif isinstance(value, (list, tuple, set)):
        raw = value
    else:
        raw = [value]

    items: List[str] = []
    for entry in raw:
        text = entry.value if hasattr(entry, "value") else str(entry)
        items.extend(part.strip() for part in text.split(",") if part.strip())
    return items or None


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return a timezone-aware UTC datetime; naive values are taken to be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_request(model: Type[RequestT], **raw: Any) -> RequestT:
    """
    Build a typed request from raw query values.

    Unset (None) values are dropped so model defaults apply.

    Raises:
        InvalidArgumentError: if any value fails validation
    """
    values = {key: value for key, value in raw.items() if value is not None}
    try:
        return model(**values)
    except ValidationError as e:
        errors = [
            {"field": ".".join(str(p) for p in err["loc"]) or "request", "message": err["msg"]}
            for err in e.errors()
        ]
        message = ", ".join(err["message"] for err in errors)
        logger.debug(f"Rejected {model.__name__}: {message}")
        raise InvalidArgumentError(message, {"errors": errors}) from e
