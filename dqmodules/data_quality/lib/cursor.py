"""
Seekable, bidirectional cursors over an ordered dataset snapshot.

A cursor only tracks a read position; it never mutates the dataset. The total
row count is captured once at creation, so rows that arrive while a job is in
flight stay invisible to it (snapshot isolation, not live consistency).

Positions are absolute offsets into the ascending order of the snapshot:
  - a forward cursor starts at 0 and is exhausted at `total`
  - a backward cursor starts at `total` and is exhausted at 0
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, replace
from typing import Any, Protocol

from .errors import DatasetUnavailable, OutOfRange
from .models import DatasetSpec, Direction

LOG = logging.getLogger(__name__)

_FORMAT_VERSION = 1


class RecordSource(Protocol):
    """
    Anything that can count and slice an ordered dataset.

    fetch() returns rows in ascending order for [offset, offset + limit).
    snapshot_bound() returns the insertion-sequence high-water mark used to
    pin a snapshot (or None when the source cannot pin one).
    """

    def count(self, spec: DatasetSpec) -> int: ...

    def fetch(self, spec: DatasetSpec, offset: int, limit: int) -> list[dict[str, Any]]: ...

    def snapshot_bound(self, spec: DatasetSpec) -> int | None: ...


@dataclass
class Cursor:
    job_id: str
    spec: DatasetSpec
    total: int
    position: int = 0
    direction: Direction = Direction.FORWARD
    checkpoint: int = 0

    # ---- construction -------------------------------------------------------

    @classmethod
    def create(
        cls,
        source: RecordSource,
        job_id: str,
        spec: DatasetSpec,
        direction: Direction = Direction.FORWARD,
    ) -> Cursor:
        """
        Open a cursor and snapshot the dataset's total.

        Raises:
            DatasetUnavailable: the source could not be queried.
        """
        try:
            if spec.upper_bound is None:
                spec = replace(spec, upper_bound=source.snapshot_bound(spec))
            total = int(source.count(spec))
        except DatasetUnavailable:
            raise
        except Exception as e:
            raise DatasetUnavailable(f"dataset {spec.name!r} could not be counted: {e}") from e

        start = total if direction is Direction.BACKWARD else 0
        return cls(job_id=job_id, spec=spec, total=total, position=start, direction=direction)

    # ---- state --------------------------------------------------------------

    @property
    def dataset(self) -> str:
        return self.spec.name

    @property
    def exhausted(self) -> bool:
        if self.direction is Direction.BACKWARD:
            return self.position <= 0
        return self.position >= self.total

    @property
    def consumed(self) -> int:
        """Records travelled past in the cursor's own direction."""
        if self.direction is Direction.BACKWARD:
            return self.total - self.position
        return self.position

    def position_for_consumed(self, consumed: int) -> int:
        consumed = max(0, min(consumed, self.total))
        return self.total - consumed if self.direction is Direction.BACKWARD else consumed

    # ---- movement -----------------------------------------------------------

    def seek(self, position: int) -> Cursor:
        if position < 0 or position > self.total:
            raise OutOfRange(f"position {position} outside [0, {self.total}] for dataset {self.dataset!r}")
        self.position = int(position)
        return self

    def fetch(
        self,
        source: RecordSource,
        count: int,
        direction: Direction | None = None,
    ) -> tuple[list[dict[str, Any]], int]:
        """
        Read up to `count` records from the current position.

        Records come back in travel order. Fewer than `count` means the
        snapshot is exhausted in that direction; that is not an error.

        Raises:
            DatasetUnavailable: the source query failed.
        """
        if count < 1:
            raise ValueError(f"fetch count must be >= 1 (got {count})")
        travel = direction or self.direction

        if travel is Direction.FORWARD:
            offset = self.position
            limit = min(count, self.total - self.position)
        else:
            offset = max(0, self.position - count)
            limit = self.position - offset

        if limit <= 0:
            return [], self.position

        try:
            rows = list(source.fetch(self.spec, offset, limit))
        except DatasetUnavailable:
            raise
        except Exception as e:
            raise DatasetUnavailable(f"dataset {self.dataset!r} fetch failed at offset {offset}: {e}") from e

        rows = rows[:limit]
        if travel is Direction.FORWARD:
            self.position += len(rows)
        else:
            rows.reverse()
            self.position -= len(rows)

        if len(rows) < limit:
            # Rows disappeared from inside the snapshot; nothing more to read this way.
            LOG.warning(
                "Short read on %s (wanted %d, got %d at offset %d); treating as exhausted",
                self.dataset,
                limit,
                len(rows),
                offset,
            )
            self.position = self.total if travel is Direction.FORWARD else 0

        return rows, self.position

    # ---- persistence --------------------------------------------------------

    def serialize(self) -> bytes:
        payload = {
            "v": _FORMAT_VERSION,
            "job_id": self.job_id,
            "spec": self.spec.to_dict(),
            "total": self.total,
            "position": self.position,
            "direction": self.direction.value,
            "checkpoint": self.checkpoint,
        }
        return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")

    @classmethod
    def deserialize(cls, data: bytes) -> Cursor:
        try:
            payload = json.loads(data.decode("utf-8"))
            if payload.get("v") != _FORMAT_VERSION:
                raise ValueError(f"unsupported cursor format {payload.get('v')!r}")
            return cls(
                job_id=str(payload["job_id"]),
                spec=DatasetSpec.from_dict(payload["spec"]),
                total=int(payload["total"]),
                position=int(payload["position"]),
                direction=Direction(payload["direction"]),
                checkpoint=int(payload.get("checkpoint", 0)),
            )
        except (KeyError, TypeError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValueError(f"corrupt cursor state: {e}") from e
