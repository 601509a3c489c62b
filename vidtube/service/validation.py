from __future__ import annotations

import uuid
from typing import Any, Optional, Tuple

from vidtube.service.errors import InvalidArgumentError


def require_uuid(value: Optional[str], name: str) -> str:
    """Return ``value`` in canonical UUID form or raise InvalidArgumentError."""
    if not value or not isinstance(value, str):
        raise InvalidArgumentError(f"{name} is required", detail={"field": name})
    try:
        return str(uuid.UUID(value.strip()))
    except ValueError:
        raise InvalidArgumentError(f"invalid {name}", detail={"field": name}) from None


def _positive_int(value: Any, name: str, default: int) -> int:
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    if isinstance(value, bool):
        raise InvalidArgumentError(f"{name} must be a positive integer", detail={"field": name})
    if isinstance(value, int):
        number = value
    else:
        text = str(value).strip()
        # isdigit() alone admits superscripts and other non-decimal digits
        if not (text.isascii() and text.isdigit()):
            raise InvalidArgumentError(
                f"{name} must be a positive integer", detail={"field": name}
            )
        number = int(text)
    if number < 1:
        raise InvalidArgumentError(f"{name} must be a positive integer", detail={"field": name})
    return number


def parse_pagination(
    page: Any, limit: Any, *, default_limit: int = 10, max_limit: int = 100
) -> Tuple[int, int]:
    """Parse 1-indexed ``page`` and ``limit`` query values.

    Missing values fall back to page 1 and ``default_limit``; ``limit`` is
    capped at ``max_limit``.
    """
    page_number = _positive_int(page, "page", 1)
    page_size = min(_positive_int(limit, "limit", default_limit), max_limit)
    return page_number, page_size
