"""
Stateless, cursor-backed pagination for the dashboard lists.

Every page hands back an opaque `cursor_state` token: URL-safe base64 of
{"d": dataset, "s": page start, "e": page end, "b": snapshot bound}. The
server keeps nothing between requests; "next" reads forward from the token's
end and "previous" reads backward from its start, both against the same
snapshot bound, so rows inserted while a user is paging never shift pages.
"""

from __future__ import annotations

import base64
import binascii
import json
import math
from dataclasses import asdict, dataclass, field
from typing import Any

from .cursor import Cursor, RecordSource
from .errors import OutOfRange
from .models import DatasetSpec, Direction

MAX_PAGE_SIZE = 2000
DIRECTIONS = ("first", "last", "next", "previous")

_PAGER_JOB = "pagination"


@dataclass(frozen=True)
class PageToken:
    dataset: str
    start: int
    end: int
    bound: int | None

    def encode(self) -> str:
        raw = json.dumps({"d": self.dataset, "s": self.start, "e": self.end, "b": self.bound}, separators=(",", ":"))
        return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")

    @classmethod
    def decode(cls, token: str) -> PageToken:
        try:
            data = json.loads(base64.urlsafe_b64decode(token.encode("ascii")).decode("utf-8"))
            tok = cls(
                dataset=str(data["d"]),
                start=int(data["s"]),
                end=int(data["e"]),
                bound=None if data.get("b") is None else int(data["b"]),
            )
        except (AttributeError, KeyError, TypeError, ValueError, UnicodeError, binascii.Error) as e:
            raise OutOfRange(f"malformed page token: {e}") from e
        if tok.start < 0 or tok.end < tok.start:
            raise OutOfRange("malformed page token: bad range")
        return tok


@dataclass
class PageResult:
    records: list[dict[str, Any]] = field(default_factory=list)
    page_number: int = 0
    total_pages: int = 0
    total_records: int = 0
    page_size: int = 0
    has_next: bool = False
    has_previous: bool = False
    cursor_state: str | None = None

    @property
    def next_token(self) -> str | None:
        return self.cursor_state if self.has_next else None

    @property
    def previous_token(self) -> str | None:
        return self.cursor_state if self.has_previous else None

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["next_token"] = self.next_token
        d["previous_token"] = self.previous_token
        return d


class PaginationService:
    def __init__(self, source: RecordSource) -> None:
        self.source = source

    def page(
        self,
        dataset: str,
        page_size: int,
        token: str | None = None,
        direction: str = "first",
    ) -> PageResult:
        """
        Fetch one page.

          first     page 1 of a fresh snapshot
          last      the final page of a fresh snapshot
          next      the page after the one `token` describes
          previous  the page before the one `token` describes

        Raises:
            OutOfRange: bad page size, unknown direction, missing/malformed/
                foreign token, or no page in the requested direction.
            DatasetUnavailable: the source failed.
        """
        _check_page_size(page_size)
        direction = (direction or "first").strip().lower()
        if direction not in DIRECTIONS:
            raise OutOfRange(f"unknown page direction {direction!r}")

        if direction in ("first", "last"):
            cursor = self._open(dataset, None)
            if direction == "first" or cursor.total == 0:
                start = 0
            else:
                start = ((cursor.total - 1) // page_size) * page_size
            cursor.seek(start)
            records, _ = cursor.fetch(self.source, page_size)
            return self._result(cursor, start, records, page_size)

        if not token:
            raise OutOfRange(f"direction {direction!r} needs a page token")
        tok = PageToken.decode(token)
        if tok.dataset != dataset:
            raise OutOfRange(f"page token belongs to {tok.dataset!r}, not {dataset!r}")
        cursor = self._open(dataset, tok.bound)

        if direction == "next":
            if tok.end >= cursor.total:
                raise OutOfRange("no next page")
            cursor.seek(tok.end)
            records, _ = cursor.fetch(self.source, page_size, Direction.FORWARD)
            return self._result(cursor, tok.end, records, page_size)

        if tok.start <= 0:
            raise OutOfRange("no previous page")
        cursor.seek(min(tok.start, cursor.total))
        records, start = cursor.fetch(self.source, page_size, Direction.BACKWARD)
        records.reverse()
        return self._result(cursor, start, records, page_size)

    def jump_to_page(self, dataset: str, page_number: int, page_size: int) -> PageResult:
        """
        Seek straight to (page_number - 1) * page_size on a fresh snapshot.

        Raises:
            OutOfRange: page_number outside [1, total_pages] or bad page size.
        """
        _check_page_size(page_size)
        cursor = self._open(dataset, None)
        total_pages = math.ceil(cursor.total / page_size)
        if page_number < 1 or page_number > total_pages:
            raise OutOfRange(f"page {page_number} outside [1, {total_pages}]")
        start = (page_number - 1) * page_size
        cursor.seek(start)
        records, _ = cursor.fetch(self.source, page_size)
        return self._result(cursor, start, records, page_size)

    # ---- internals ----------------------------------------------------------

    def _open(self, dataset: str, bound: int | None) -> Cursor:
        return Cursor.create(self.source, _PAGER_JOB, DatasetSpec(name=dataset, upper_bound=bound))

    def _result(self, cursor: Cursor, start: int, records: list[dict[str, Any]], page_size: int) -> PageResult:
        total = cursor.total
        end = start + len(records)
        token = PageToken(dataset=cursor.dataset, start=start, end=end, bound=cursor.spec.upper_bound)
        return PageResult(
            records=records,
            page_number=(start // page_size + 1) if total else 0,
            total_pages=math.ceil(total / page_size),
            total_records=total,
            page_size=page_size,
            has_next=end < total,
            has_previous=start > 0,
            cursor_state=token.encode(),
        )


def _check_page_size(page_size: int) -> None:
    if not isinstance(page_size, int) or isinstance(page_size, bool) or not 1 <= page_size <= MAX_PAGE_SIZE:
        raise OutOfRange(f"page_size must be an integer in [1, {MAX_PAGE_SIZE}] (got {page_size!r})")
