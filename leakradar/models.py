"""Records shared by the detection, storage and pipeline layers."""
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC timestamp so stored values sort lexicographically."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp, including GitHub's trailing 'Z' form."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class JobMode(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.DONE, JobStatus.ERROR)


@dataclass
class LeakCandidate:
    """A raw detector match plus where it was found."""
    provider: str
    secret: str
    repo_full_name: str
    file_path: str
    commit_sha: str
    actor_login: Optional[str] = None
    added_at: Optional[datetime] = None
    source_url: Optional[str] = None

    def split_repo(self):
        owner, _, name = self.repo_full_name.partition("/")
        return owner or "unknown", name or "unknown"

    def resolved_source_url(self) -> str:
        if self.source_url:
            return self.source_url
        return f"https://github.com/{self.repo_full_name}/commit/{self.commit_sha}"


@dataclass(frozen=True)
class Finding:
    """A persisted leak. Never mutated once written."""
    provider: str
    redacted_secret: str
    secret_fingerprint: str
    repo_owner: str
    repo_name: str
    actor_login: Optional[str]
    file_path: str
    commit_or_ref: str
    source_url: str
    detected_at: datetime
    added_at: datetime


@dataclass
class ScanJob:
    id: str
    mode: JobMode
    query: Optional[str]
    status: JobStatus
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    note: Optional[str] = None
    inserted: int = 0


@dataclass
class ScanSchedule:
    id: str
    interval_minutes: int
    query: Optional[str]
    enabled: bool
    next_run_at: datetime
