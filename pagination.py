"""Opaque cursor pagination shared by every paginated tool.

A cursor seals ``{offset, pageSize, issuedAt}`` inside a Fernet token, so
clients can neither read nor edit it, and the issue time is authenticated.
Tokens older than ``CURSOR_TTL_SECONDS`` are rejected, never clamped.

``has more`` is a heuristic: a next cursor is issued whenever the upstream
returned exactly ``pageSize`` items. A dataset whose size is an exact
multiple of the page size therefore ends with one empty page.
"""
import json
import os
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from cryptography.fernet import Fernet, InvalidToken

from errors import InvalidCursor
from utils import logger

CURSOR_TTL_SECONDS = 3600
CURSOR_SECRET = os.environ.get("CURSOR_SECRET")


class PageParams(NamedTuple):
    offset: int
    page_size: int


@dataclass
class PaginatedResult:
    items: List[Any]
    next_cursor: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def count(self) -> int:
        return len(self.items)

    def to_dict(self) -> Dict[str, Any]:
        payload = dict(self.extra)
        payload["items"] = self.items
        payload["count"] = self.count
        if self.next_cursor:
            payload["nextCursor"] = self.next_cursor
        return payload


class CursorCodec:
    def __init__(self, secret: str | bytes | None = None, clock: Callable[[], float] = time.time):
        if secret is None:
            if CURSOR_SECRET:
                secret = CURSOR_SECRET
            else:
                logger.warning("CURSOR_SECRET not set; cursors are only valid within this process")
                secret = Fernet.generate_key()
        self._fernet = Fernet(secret)
        self._clock = clock

    def encode(self, offset: int, page_size: int) -> str:
        if offset < 0 or page_size <= 0:
            raise ValueError(f"invalid pagination state offset={offset} page_size={page_size}")
        now = int(self._clock())
        body = json.dumps({"offset": offset, "pageSize": page_size, "issuedAt": now}).encode("utf-8")
        return self._fernet.encrypt_at_time(body, now).decode("ascii")

    def decode(self, token: str) -> PageParams:
        if not isinstance(token, str) or not token:
            raise InvalidCursor("cursor must be a non-empty string")
        now = int(self._clock())
        try:
            issued_at = self._fernet.extract_timestamp(token)
        except (InvalidToken, ValueError, TypeError):
            raise InvalidCursor("malformed token")
        if now - issued_at > CURSOR_TTL_SECONDS:
            raise InvalidCursor("cursor expired (max age: 1 hour)")
        try:
            body = json.loads(self._fernet.decrypt_at_time(token, CURSOR_TTL_SECONDS, now))
        except (InvalidToken, ValueError, TypeError):
            raise InvalidCursor("malformed token")

        offset = body.get("offset") if isinstance(body, dict) else None
        page_size = body.get("pageSize") if isinstance(body, dict) else None
        if not _is_int(offset) or not _is_int(page_size) or offset < 0 or page_size <= 0:
            raise InvalidCursor("missing or invalid pagination fields")
        return PageParams(offset, page_size)

    def parse_params(self, args: Dict[str, Any], default_page_size: int) -> PageParams:
        """Single entry point for paginated executors: first page or the decoded cursor."""
        cursor = (args or {}).get("cursor")
        if not cursor:
            return PageParams(0, default_page_size)
        return self.decode(cursor)

    def paginate(self, items: List[Any], items_fetched: int, params: PageParams,
                 extra: Dict[str, Any] | None = None) -> PaginatedResult:
        """Build a page; ``items`` may be filtered, ``items_fetched`` is the raw upstream count."""
        next_cursor = None
        if items_fetched == params.page_size:
            next_cursor = self.encode(params.offset + params.page_size, params.page_size)
        return PaginatedResult(items=items, next_cursor=next_cursor, extra=dict(extra or {}))


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)
