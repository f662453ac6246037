"""Storage backends for merge-gates.

The gate services only need a narrow set of reads (merge requests, reviews,
coverage reports, bugs) plus two writes: the coverage status write-back and
the emergency bypass audit trail. JSONL is the default backend; an
in-memory backend is provided for tests and embedding.
"""

from __future__ import annotations

import fcntl
import logging
import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Protocol, TypeVar, runtime_checkable

from pydantic import BaseModel

from shared.config import StorageConfig
from shared.errors import StoreError
from shared.models import (
    BugRecord,
    CoverageRecord,
    CoverageStatus,
    EmergencyBypassRecord,
    MergeRequestSnapshot,
    ReviewRecord,
    as_utc,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def _in_range(ts: datetime, start: datetime | None, end: datetime | None) -> bool:
    if start is not None and ts < as_utc(start):
        return False
    if end is not None and ts > as_utc(end):
        return False
    return True


def _bug_matches(
    bug: BugRecord,
    project_id: str | None,
    assignee_id: str | None,
    start: datetime | None,
    end: datetime | None,
) -> bool:
    if bug.issue_type != "bug":
        return False
    if project_id and bug.project_id != project_id:
        return False
    if assignee_id and bug.assignee_id != assignee_id:
        return False
    return _in_range(bug.created_at, start, end)


# --- Storage Protocol ---


@runtime_checkable
class GateStore(Protocol):
    """Read/write contract the gate services need from the store."""

    def get_merge_request(self, mr_id: str) -> MergeRequestSnapshot | None:
        """Look up a merge request by id."""
        ...

    def list_merge_requests(
        self, project_id: str, start: datetime | None = None, end: datetime | None = None
    ) -> list[MergeRequestSnapshot]:
        """Merge requests of a project created within the range."""
        ...

    def list_reviews(self, mr_id: str) -> list[ReviewRecord]:
        """All reviews for a merge request, most recent first."""
        ...

    def append_bypass(self, record: EmergencyBypassRecord) -> None:
        """Append an emergency bypass audit record."""
        ...

    def list_bypasses(self, mr_id: str) -> list[EmergencyBypassRecord]:
        """Emergency bypass records for a merge request, oldest first."""
        ...

    def get_coverage(self, commit_id: str) -> CoverageRecord | None:
        """Look up the coverage report of a commit."""
        ...

    def coverage_history(self, project_id: str) -> list[CoverageRecord]:
        """Coverage reports of a project, most recent first."""
        ...

    def coverage_between(
        self, project_id: str, start: datetime | None = None, end: datetime | None = None
    ) -> list[CoverageRecord]:
        """Coverage reports of a project within the range."""
        ...

    def update_coverage_status(
        self, commit_id: str, status: CoverageStatus, threshold: float | None = None
    ) -> bool:
        """Write back the gate outcome. Returns False if no report exists."""
        ...

    def list_open_bugs(self) -> list[BugRecord]:
        """All open bug-type issues."""
        ...

    def list_bugs(
        self,
        project_id: str | None = None,
        assignee_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[BugRecord]:
        """Bug-type issues created within the range, optionally filtered."""
        ...


# --- In-Memory Backend ---


class InMemoryStore:
    """Dict-backed store. Records are keyed by id; saving again replaces."""

    def __init__(self) -> None:
        self.merge_requests: dict[str, MergeRequestSnapshot] = {}
        self.reviews: list[ReviewRecord] = []
        self.bypasses: list[EmergencyBypassRecord] = []
        self.coverage: dict[str, CoverageRecord] = {}
        self.bugs: dict[str, BugRecord] = {}

    # Ingestion helpers

    def save_merge_request(self, mr: MergeRequestSnapshot) -> None:
        self.merge_requests[mr.id] = mr

    def save_review(self, review: ReviewRecord) -> None:
        self.reviews.append(review)

    def save_coverage(self, record: CoverageRecord) -> None:
        self.coverage[record.commit_id] = record

    def save_bug(self, bug: BugRecord) -> None:
        self.bugs[bug.id] = bug

    # GateStore

    def get_merge_request(self, mr_id: str) -> MergeRequestSnapshot | None:
        return self.merge_requests.get(mr_id)

    def list_merge_requests(
        self, project_id: str, start: datetime | None = None, end: datetime | None = None
    ) -> list[MergeRequestSnapshot]:
        return [
            mr
            for mr in self.merge_requests.values()
            if mr.project_id == project_id and _in_range(mr.created_at, start, end)
        ]

    def list_reviews(self, mr_id: str) -> list[ReviewRecord]:
        reviews = [r for r in self.reviews if r.mr_id == mr_id]
        return sorted(reviews, key=lambda r: r.reviewed_at, reverse=True)

    def append_bypass(self, record: EmergencyBypassRecord) -> None:
        self.bypasses.append(record)

    def list_bypasses(self, mr_id: str) -> list[EmergencyBypassRecord]:
        return [b for b in self.bypasses if b.mr_id == mr_id]

    def get_coverage(self, commit_id: str) -> CoverageRecord | None:
        return self.coverage.get(commit_id)

    def coverage_history(self, project_id: str) -> list[CoverageRecord]:
        records = [c for c in self.coverage.values() if c.project_id == project_id]
        return sorted(records, key=lambda c: c.timestamp, reverse=True)

    def coverage_between(
        self, project_id: str, start: datetime | None = None, end: datetime | None = None
    ) -> list[CoverageRecord]:
        return [
            c
            for c in self.coverage.values()
            if c.project_id == project_id and _in_range(c.timestamp, start, end)
        ]

    def update_coverage_status(
        self, commit_id: str, status: CoverageStatus, threshold: float | None = None
    ) -> bool:
        record = self.coverage.get(commit_id)
        if record is None:
            return False
        record.status = status
        if threshold is not None:
            record.threshold = threshold
        return True

    def list_open_bugs(self) -> list[BugRecord]:
        return [b for b in self.bugs.values() if b.issue_type == "bug" and b.is_open]

    def list_bugs(
        self,
        project_id: str | None = None,
        assignee_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[BugRecord]:
        return [
            b for b in self.bugs.values() if _bug_matches(b, project_id, assignee_id, start, end)
        ]


# --- JSONL Backend ---


class JSONLStore:
    """Append-only JSONL storage, one file per record kind.

    Files are stored as: {base_path}/{kind}.jsonl
    Keyed records (merge requests, coverage, bugs) are upserted by
    appending; the last line for a key wins. Writers serialize on a sidecar
    {kind}.lock file, and rewrites swap the file in with os.replace so readers
    never see a partially written file.
    """

    MERGE_REQUESTS = "merge_requests"
    REVIEWS = "reviews"
    BYPASSES = "bypasses"
    COVERAGE = "coverage"
    BUGS = "bugs"

    def __init__(self, base_path: str | Path):
        self.base_path = Path(base_path)
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(f"Cannot create store directory {self.base_path}") from e

    def _file(self, kind: str) -> Path:
        return self.base_path / f"{kind}.jsonl"

    @contextmanager
    def _locked(self, kind: str) -> Iterator[None]:
        """Hold the writer lock of a kind, kept on a sidecar {kind}.lock file."""
        try:
            lock_file = open(self.base_path / f"{kind}.lock", "a")
        except OSError as e:
            raise StoreError(f"Cannot lock {kind} records") from e
        with lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _append(self, kind: str, record: BaseModel) -> None:
        """Append a record under the writer lock."""
        line = record.model_dump_json() + "\n"
        with self._locked(kind):
            try:
                with open(self._file(kind), "a") as f:
                    f.write(line)
            except OSError as e:
                raise StoreError(f"Cannot write {kind} record") from e

    def _read_lines(self, kind: str) -> list[str]:
        path = self._file(kind)
        if not path.exists():
            return []
        try:
            with open(path) as f:
                return [line.rstrip("\n") for line in f]
        except OSError as e:
            raise StoreError(f"Cannot read {kind} records") from e

    @staticmethod
    def _parse(line: str, model: type[ModelT]) -> ModelT | None:
        line = line.strip()
        if not line:
            return None
        try:
            return model.model_validate_json(line)
        except ValueError:
            logger.debug("Skipping malformed %s line", model.__name__)
            return None

    def _read(self, kind: str, model: type[ModelT]) -> list[ModelT]:
        """Read all records of a kind, skipping malformed lines."""
        records: list[ModelT] = []
        for line in self._read_lines(kind):
            record = self._parse(line, model)
            if record is not None:
                records.append(record)
        return records

    def _replace(self, kind: str, lines: list[str]) -> None:
        """Swap in new file contents atomically. Caller holds the writer lock."""
        try:
            tmp = tempfile.NamedTemporaryFile(
                "w", dir=self.base_path, prefix=f".{kind}.", suffix=".tmp", delete=False
            )
        except OSError as e:
            raise StoreError(f"Cannot rewrite {kind} records") from e
        try:
            with tmp:
                for line in lines:
                    tmp.write(line + "\n")
            os.replace(tmp.name, self._file(kind))
        except OSError as e:
            Path(tmp.name).unlink(missing_ok=True)
            raise StoreError(f"Cannot rewrite {kind} records") from e

    def _merge_requests(self) -> dict[str, MergeRequestSnapshot]:
        return {mr.id: mr for mr in self._read(self.MERGE_REQUESTS, MergeRequestSnapshot)}

    def _coverage(self) -> dict[str, CoverageRecord]:
        return {c.commit_id: c for c in self._read(self.COVERAGE, CoverageRecord)}

    def _bugs(self) -> dict[str, BugRecord]:
        return {b.id: b for b in self._read(self.BUGS, BugRecord)}

    # Ingestion helpers

    def save_merge_request(self, mr: MergeRequestSnapshot) -> None:
        self._append(self.MERGE_REQUESTS, mr)

    def save_review(self, review: ReviewRecord) -> None:
        self._append(self.REVIEWS, review)

    def save_coverage(self, record: CoverageRecord) -> None:
        self._append(self.COVERAGE, record)

    def save_bug(self, bug: BugRecord) -> None:
        self._append(self.BUGS, bug)

    # GateStore

    def get_merge_request(self, mr_id: str) -> MergeRequestSnapshot | None:
        return self._merge_requests().get(mr_id)

    def list_merge_requests(
        self, project_id: str, start: datetime | None = None, end: datetime | None = None
    ) -> list[MergeRequestSnapshot]:
        return [
            mr
            for mr in self._merge_requests().values()
            if mr.project_id == project_id and _in_range(mr.created_at, start, end)
        ]

    def list_reviews(self, mr_id: str) -> list[ReviewRecord]:
        reviews = [r for r in self._read(self.REVIEWS, ReviewRecord) if r.mr_id == mr_id]
        return sorted(reviews, key=lambda r: r.reviewed_at, reverse=True)

    def append_bypass(self, record: EmergencyBypassRecord) -> None:
        self._append(self.BYPASSES, record)

    def list_bypasses(self, mr_id: str) -> list[EmergencyBypassRecord]:
        return [b for b in self._read(self.BYPASSES, EmergencyBypassRecord) if b.mr_id == mr_id]

    def get_coverage(self, commit_id: str) -> CoverageRecord | None:
        return self._coverage().get(commit_id)

    def coverage_history(self, project_id: str) -> list[CoverageRecord]:
        records = [c for c in self._coverage().values() if c.project_id == project_id]
        return sorted(records, key=lambda c: c.timestamp, reverse=True)

    def coverage_between(
        self, project_id: str, start: datetime | None = None, end: datetime | None = None
    ) -> list[CoverageRecord]:
        return [
            c
            for c in self._coverage().values()
            if c.project_id == project_id and _in_range(c.timestamp, start, end)
        ]

    def update_coverage_status(
        self, commit_id: str, status: CoverageStatus, threshold: float | None = None
    ) -> bool:
        """Update the status of a coverage report.

        Only the current line for the commit is replaced; every other line,
        malformed ones included, is kept as is.
        """
        with self._locked(self.COVERAGE):
            lines = self._read_lines(self.COVERAGE)
            index: int | None = None
            record: CoverageRecord | None = None
            for i, line in enumerate(lines):
                parsed = self._parse(line, CoverageRecord)
                if parsed is not None and parsed.commit_id == commit_id:
                    index, record = i, parsed
            if index is None or record is None:
                return False

            record.status = status
            if threshold is not None:
                record.threshold = threshold
            lines[index] = record.model_dump_json()
            self._replace(self.COVERAGE, lines)
        return True

    def list_open_bugs(self) -> list[BugRecord]:
        return [b for b in self._bugs().values() if b.issue_type == "bug" and b.is_open]

    def list_bugs(
        self,
        project_id: str | None = None,
        assignee_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[BugRecord]:
        return [
            b for b in self._bugs().values() if _bug_matches(b, project_id, assignee_id, start, end)
        ]


# --- Factory ---


def create_store(config: StorageConfig | None = None) -> JSONLStore | InMemoryStore:
    """Create a store from configuration.

    Args:
        config: Storage configuration. If None, uses defaults.

    Returns:
        A configured store.
    """
    if config is None:
        config = StorageConfig()

    if config.backend == "jsonl":
        return JSONLStore(base_path=config.path)
    if config.backend == "memory":
        return InMemoryStore()

    raise ValueError(
        f"Unknown storage backend: {config.backend!r}. Supported: 'jsonl', 'memory'"
    )
