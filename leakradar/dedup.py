"""
Global at-most-once recording of leaks.

The fingerprint uniqueness constraint in the leaks table is the source of
truth. DedupCache only saves a database round trip for fingerprints this
process has already handled.
"""
import logging
import sqlite3
from collections import OrderedDict
from typing import Optional

from .detection import fingerprint, redact
from .models import Finding, LeakCandidate, utcnow
from .store import LeakDatabase

logger = logging.getLogger(__name__)

DEFAULT_CACHE_CAPACITY = 10000
DEFAULT_EVICT_FRACTION = 0.2


class DedupCache:
    """Insertion-ordered set with batch FIFO eviction."""

    def __init__(self, capacity: int = DEFAULT_CACHE_CAPACITY, evict_fraction: float = DEFAULT_EVICT_FRACTION):
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self.evict_count = max(1, int(capacity * evict_fraction))
        self._entries: "OrderedDict[str, None]" = OrderedDict()

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, key: str) -> None:
        if key in self._entries:
            return
        if len(self._entries) >= self.capacity:
            for _ in range(min(self.evict_count, len(self._entries))):
                self._entries.popitem(last=False)
        self._entries[key] = None


class LeakWriter:
    """
    Turns LeakCandidates into stored Findings.

    store() returns True only for the call that created the row. Rollup
    updates after an insert are best effort.
    """

    def __init__(self, db: LeakDatabase, salt: str, cache: Optional[DedupCache] = None):
        self.db = db
        self.salt = salt
        self.cache = cache if cache is not None else DedupCache()

    def build_finding(self, candidate: LeakCandidate, key_hash: str) -> Finding:
        owner, name = candidate.split_repo()
        detected_at = utcnow()
        return Finding(
            provider=candidate.provider,
            redacted_secret=redact(candidate.secret),
            secret_fingerprint=key_hash,
            repo_owner=owner,
            repo_name=name,
            actor_login=candidate.actor_login,
            file_path=candidate.file_path,
            commit_or_ref=candidate.commit_sha,
            source_url=candidate.resolved_source_url(),
            detected_at=detected_at,
            added_at=candidate.added_at or detected_at,
        )

    def store(self, candidate: LeakCandidate) -> bool:
        key_hash = fingerprint(candidate.secret, self.salt)
        if key_hash in self.cache:
            return False

        finding = self.build_finding(candidate, key_hash)
        inserted = self.db.insert_finding(finding)
        self.cache.add(key_hash)

        if not inserted:
            logger.debug(f"Duplicate {candidate.provider} key in {candidate.repo_full_name}, skipped")
            return False

        logger.info(
            f"New {finding.provider} leak {finding.redacted_secret} in "
            f"{candidate.repo_full_name}/{finding.file_path}",
            extra={"repo": candidate.repo_full_name},
        )
        self._update_rollups(finding)
        return True

    def _update_rollups(self, finding: Finding) -> None:
        try:
            self.db.bump_daily_activity(finding.detected_at)
        except sqlite3.Error as e:
            logger.warning(f"activity_daily update failed: {e}")

        if not finding.actor_login:
            return
        try:
            self.db.bump_actor(finding.actor_login, finding.detected_at)
        except sqlite3.Error as e:
            logger.warning(f"leaderboard_devs update failed: {e}")
