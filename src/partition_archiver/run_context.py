"""Per-run context threaded through every component call."""

import uuid
from datetime import date, datetime, timezone
from typing import Optional

from partition_archiver.relations import RelationRef

# Setup phase step codes
STEP_CHECK_SOURCE = 1
STEP_LOAD_CONFIG = 2
STEP_VALIDATE_STRUCTURE = 3
STEP_BEFORE_STATS = 4
STEP_INDEX_HEALTH = 5

# Offsets within a date block (block base = 100 * (date_index + 1))
DATE_START = 0
DATE_NOT_FOUND = 1
DATE_LOCATED = 2
DATE_COUNTED = 3
DATE_BEFORE_METRICS = 4
DATE_STAGED_FROM_SOURCE = 5
DATE_ARCHIVE_PARTITION = 6
DATE_STAGED_INTO_ARCHIVE = 7
DATE_EXCHANGED = 8
DATE_AFTER_METRICS = 9
DATE_SOURCE_DROPPED = 10
DATE_LOGGED = 11

# Offsets within the post-run block
POST_INDEX_HEALTH = 0
POST_STATS_SOURCE = 1
POST_STATS_ARCHIVE = 2
POST_SUMMARY = 10


class RunContext:
    """Identity and step position of one archival run.

    ``step_code`` tells where in the run an event happened; ``sequence``
    increases by one for every event so the trace can be replayed in order.
    """

    def __init__(
        self,
        source: RelationRef,
        run_id: Optional[str] = None,
        executed_by: Optional[str] = None,
    ) -> None:
        self.run_id = run_id or str(uuid.uuid4())
        self.source = source
        self.archive: Optional[RelationRef] = None
        self.staging: Optional[RelationRef] = None
        self.executed_by = executed_by
        self.started_at = datetime.now(timezone.utc)
        self.step_code = 0
        self.sequence = 0
        self.date_index: Optional[int] = None
        self.current_date: Optional[date] = None
        self.date_count = 0

    def setup_step(self, step: int) -> int:
        self.step_code = step
        return self.step_code

    def begin_date(self, index: int, partition_date: date) -> int:
        """Enter the block for the index-th date (0-based)."""
        self.date_index = index
        self.current_date = partition_date
        return self.date_step(DATE_START)

    def date_step(self, offset: int) -> int:
        if self.date_index is None:
            raise RuntimeError("date_step() called outside a date block")
        self.step_code = 100 * (self.date_index + 1) + offset
        return self.step_code

    def begin_post_run(self) -> int:
        """Leave the date loop; post-run codes follow the last date block."""
        self.date_index = None
        self.current_date = None
        return self.post_step(POST_INDEX_HEALTH)

    def post_step(self, offset: int) -> int:
        self.step_code = 100 * (self.date_count + 1) + 50 + offset
        return self.step_code

    def next_sequence(self) -> int:
        self.sequence += 1
        return self.sequence

    def as_log_context(self) -> dict[str, object]:
        """Key-value pairs to attach to structlog events."""
        values: dict[str, object] = {
            "run_id": self.run_id,
            "step": self.step_code,
            "source_table": str(self.source),
        }
        if self.current_date is not None:
            values["partition_date"] = self.current_date.isoformat()
        return values
