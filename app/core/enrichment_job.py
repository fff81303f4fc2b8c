"""Enrichment job state.

One job per created item, tracking the background pipeline:
1. DERIVE: transcribe audio / summarize URL into text
2. CATEGORIZE: ask the model for category and tags
3. WRITE_BACK: store category, merged tags and derived text

Jobs only record what happened; nothing here retries or schedules work.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class EnrichmentPhase(str, Enum):
    """Phases of the enrichment pipeline."""

    IDLE = "idle"
    DERIVE = "derive"
    CATEGORIZE = "categorize"
    WRITE_BACK = "write_back"
    DONE = "done"


class EnrichmentStatus(str, Enum):
    """Status of an enrichment job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class EnrichmentJob:
    """Tracks one background enrichment of a content item."""

    id: str
    item_id: str
    item_type: str
    status: EnrichmentStatus = EnrichmentStatus.PENDING
    phase: EnrichmentPhase = EnrichmentPhase.IDLE

    # Result
    category: str | None = None
    tags_added: int = 0

    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_activity: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None
    error: str | None = None

    def touch(self) -> None:
        """Update last_activity timestamp."""
        self.last_activity = datetime.now(timezone.utc)

    @property
    def duration_ms(self) -> int | None:
        if self.finished_at is None:
            return None
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for JSON serialization."""
        return {
            "id": self.id,
            "item_id": self.item_id,
            "item_type": self.item_type,
            "status": self.status.value,
            "phase": self.phase.value,
            "category": self.category,
            "tags_added": self.tags_added,
            "started_at": self.started_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_ms": self.duration_ms,
            "error": self.error,
        }


class EnrichmentJobStore:
    """In-memory store for enrichment jobs. Thread-safe.

    Keeps at most ``max_jobs`` entries; the oldest finished jobs are dropped first.
    """

    def __init__(self, max_jobs: int = 500) -> None:
        self._jobs: dict[str, EnrichmentJob] = {}
        self._lock = threading.Lock()
        self._max_jobs = max_jobs

    def create(self, item_id: str, item_type: str) -> EnrichmentJob:
        """Create a new pending job for an item."""
        job = EnrichmentJob(id=str(uuid.uuid4()), item_id=item_id, item_type=item_type)
        with self._lock:
            self._jobs[job.id] = job
            self._prune()
        return job

    def _prune(self) -> None:
        """Drop oldest finished jobs beyond the limit. Must be called within lock."""
        overflow = len(self._jobs) - self._max_jobs
        if overflow <= 0:
            return
        finished = sorted(
            (j for j in self._jobs.values() if j.finished_at is not None),
            key=lambda j: j.started_at,
        )
        for job in finished[:overflow]:
            del self._jobs[job.id]

    def update(self, job: EnrichmentJob) -> None:
        """Update job in store."""
        job.touch()
        if job.status in (EnrichmentStatus.COMPLETED, EnrichmentStatus.FAILED) and job.finished_at is None:
            job.finished_at = job.last_activity
        with self._lock:
            self._jobs[job.id] = job

    def list_for_item(self, item_id: str) -> list[EnrichmentJob]:
        with self._lock:
            jobs = [j for j in self._jobs.values() if j.item_id == item_id]
        return sorted(jobs, key=lambda j: j.started_at, reverse=True)

    def list_recent(self, limit: int = 20) -> list[EnrichmentJob]:
        """List recent jobs, newest first."""
        with self._lock:
            return sorted(
                self._jobs.values(),
                key=lambda j: j.started_at,
                reverse=True,
            )[:limit]

    def count_by_status(self) -> dict[str, int]:
        counts = {status.value: 0 for status in EnrichmentStatus}
        with self._lock:
            for job in self._jobs.values():
                counts[job.status.value] += 1
        return counts
