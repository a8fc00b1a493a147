"""
Leak radar worker loop.

Each cycle runs, in order:
    1. retention cleanup (when enabled and due)
    2. schedule promotion
    3. manual/scheduled job drain
    4. auto scan: activity feed, then rotating-query backfill
    5. runtime status report

Everything runs on one task and every GitHub call is awaited in turn, since
all of them draw on the same rate-limit budget.
"""
import asyncio
import logging
import math
import sqlite3
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import AbstractSet, Awaitable, Callable, Iterable, List, Optional, Set

from .config import AI_PROVIDERS, JOB_BATCH_SIZE, MAX_FILES_PER_COMMIT, ROTATING_QUERIES, WorkerConfig
from .dedup import DedupCache, LeakWriter
from .detection import Match, added_lines, is_likely_text_file, scan_lines
from .github_client import CodeSearchHit, FetchResult, GitHubClient, PushCommit
from .models import JobStatus, LeakCandidate, ScanJob, isoformat, parse_timestamp
from .scan_query import ProviderSet, parse_scan_query, plan_for
from .store import LeakDatabase

logger = logging.getLogger(__name__)

AI_PROVIDER_SET = frozenset(AI_PROVIDERS)
NO_LEAKS_NOTE = "no leaks found"
RATE_LIMITED_NOTE = "deferred: rate limited"


def _error_text(error: BaseException) -> str:
    return str(error) or error.__class__.__name__


# ===================================================================
# COUNTERS
# ===================================================================

@dataclass
class ScanStats:
    """Counters for one auto scan or one job scan."""
    inserted: int = 0
    events_jobs: int = 0
    backfill_code_items: int = 0
    backfill_commit_items: int = 0
    errors: int = 0


@dataclass
class JobDrainStats:
    inserted: int = 0
    processed: int = 0
    errored: int = 0


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


@dataclass
class PipelineStatus:
    """
    The "pipeline" runtime-status document.

    last_* fields describe the most recent cycle, total_* fields only grow
    for the lifetime of the process.
    """
    cycle_count: int = 0
    last_cycle_started_at: Optional[str] = None
    last_cycle_finished_at: Optional[str] = None
    last_cycle_duration_ms: int = 0
    last_auto_inserted: int = 0
    last_auto_events_jobs: int = 0
    last_auto_backfill_code_items: int = 0
    last_auto_backfill_commit_items: int = 0
    last_auto_errors: int = 0
    last_manual_inserted: int = 0
    last_manual_jobs_processed: int = 0
    last_manual_jobs_errored: int = 0
    total_auto_inserted: int = 0
    total_auto_errors: int = 0
    total_manual_inserted: int = 0
    total_manual_jobs_processed: int = 0
    total_manual_jobs_errored: int = 0

    def record_cycle(self, started: datetime, finished: datetime, auto: ScanStats, jobs: JobDrainStats) -> None:
        self.last_cycle_started_at = isoformat(started)
        self.last_cycle_finished_at = isoformat(finished)
        self.last_cycle_duration_ms = int((finished - started).total_seconds() * 1000)

        self.last_auto_inserted = auto.inserted
        self.last_auto_events_jobs = auto.events_jobs
        self.last_auto_backfill_code_items = auto.backfill_code_items
        self.last_auto_backfill_commit_items = auto.backfill_commit_items
        self.last_auto_errors = auto.errors
        self.last_manual_inserted = jobs.inserted
        self.last_manual_jobs_processed = jobs.processed
        self.last_manual_jobs_errored = jobs.errored

        self.total_auto_inserted += auto.inserted
        self.total_auto_errors += auto.errors
        self.total_manual_inserted += jobs.inserted
        self.total_manual_jobs_processed += jobs.processed
        self.total_manual_jobs_errored += jobs.errored

    def to_json(self):
        return {_camel(key): value for key, value in asdict(self).items()}


# ===================================================================
# PIPELINE
# ===================================================================

class Pipeline:
    """
    Owns all per-process scan state: dedup cache, rotating query index,
    retention timer and cumulative counters.
    """

    def __init__(
        self,
        config: WorkerConfig,
        client: GitHubClient,
        db: LeakDatabase,
        writer: Optional[LeakWriter] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.client = client
        self.db = db
        self.writer = writer or LeakWriter(
            db, config.fingerprint_salt, DedupCache(config.dedup_cache_size)
        )
        self.query_index = 0
        self.last_retention_run: Optional[float] = None
        self.status = PipelineStatus()
        self._sleep = sleep
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), timezone.utc)

    def next_rotating_query(self) -> str:
        query = ROTATING_QUERIES[self.query_index % len(ROTATING_QUERIES)]
        self.query_index += 1
        return query

    async def _wait_for_reset(self, what: str, reset_after_ms: int) -> None:
        logger.warning(f"{what} rate limited - waiting {math.ceil(reset_after_ms / 1000)}s")
        await self._sleep(reset_after_ms / 1000)

    # ---------------------------------------------------------------
    # Runtime status
    # ---------------------------------------------------------------

    def _write_status(self, key: str, value) -> None:
        try:
            self.db.upsert_runtime_status(key, value)
        except sqlite3.Error as e:
            logger.warning(f"Failed to write {key} runtime status: {e}")

    def publish_initial_status(self) -> None:
        self._write_status("retention", {
            "enabled": self.config.retention_days > 0,
            "retentionDays": self.config.retention_days,
            "lastRunAt": None,
            "lastDeleted": 0,
        })
        self._write_status("pipeline", self.status.to_json())

    def publish_rate_limits(self) -> None:
        self._write_status("rate_limit", self.client.rate_limit_status())

    def publish_status(self) -> None:
        self._write_status("pipeline", self.status.to_json())

    # ---------------------------------------------------------------
    # Retention
    # ---------------------------------------------------------------

    def run_retention(self) -> Optional[int]:
        """
        Purge findings older than the retention window and rebuild rollups.

        Returns the number of deleted findings, or None when retention is
        disabled or not yet due.
        """
        if self.config.retention_days <= 0:
            return None

        now = self._clock()
        if (
            self.last_retention_run is not None
            and (now - self.last_retention_run) * 1000 < self.config.retention_run_interval_ms
        ):
            return None

        ran_at = self._now()
        cutoff = ran_at - timedelta(days=self.config.retention_days)
        deleted = self.db.purge_findings_older_than(cutoff)
        self.db.rebuild_aggregates()
        self.last_retention_run = now

        logger.info(f"Retention cleanup removed {deleted} findings older than {self.config.retention_days} days")
        self._write_status("retention", {
            "enabled": True,
            "retentionDays": self.config.retention_days,
            "lastRunAt": isoformat(ran_at),
            "lastDeleted": deleted,
        })
        return deleted

    # ---------------------------------------------------------------
    # Units of work
    # ---------------------------------------------------------------

    def _store_matches(
        self,
        matches: Iterable[Match],
        repo_full_name: str,
        file_path: str,
        commit_sha: str,
        actor_login: Optional[str] = None,
        added_at: Optional[datetime] = None,
        source_url: Optional[str] = None,
    ) -> int:
        inserted = 0
        for match in matches:
            candidate = LeakCandidate(
                provider=match.provider,
                secret=match.value,
                repo_full_name=repo_full_name,
                file_path=file_path,
                commit_sha=commit_sha,
                actor_login=actor_login,
                added_at=added_at,
                source_url=source_url,
            )
            if self.writer.store(candidate):
                inserted += 1
        return inserted

    async def _fetch_text(self, stats: ScanStats, repo_full_name: str, file_path: str, ref: str) -> Optional[str]:
        result = await self.client.fetch_file_content(
            repo_full_name, file_path, ref, self.config.max_file_bytes
        )
        if not result.ok:
            if not result.rate_limited:
                stats.errors += 1
            return None
        return result.data

    async def scan_commit(
        self,
        stats: ScanStats,
        repo_full_name: str,
        commit_sha: str,
        allowed_providers: Optional[AbstractSet[str]] = None,
        actor_login: Optional[str] = None,
    ) -> int:
        """
        Scan one commit.

        Files with a patch are scanned on their added lines only. Files
        without one are fetched whole, if they look like text.
        """
        result = await self.client.fetch_commit(repo_full_name, commit_sha)
        if not result.ok:
            if not result.rate_limited:
                stats.errors += 1
            logger.warning(f"Could not fetch commit {repo_full_name}@{commit_sha[:7]}")
            return 0

        details = result.data
        files = details.files[:MAX_FILES_PER_COMMIT]
        if len(details.files) > MAX_FILES_PER_COMMIT:
            logger.info(
                f"{repo_full_name}@{commit_sha[:7]}: scanning {MAX_FILES_PER_COMMIT} "
                f"of {len(details.files)} files"
            )

        actor = details.author_login or actor_login
        added_at = parse_timestamp(details.committed_at)
        inserted = 0

        for commit_file in files:
            if commit_file.patch:
                matches = scan_lines(added_lines(commit_file.patch), allowed_providers)
            elif is_likely_text_file(commit_file.filename):
                content = await self._fetch_text(stats, repo_full_name, commit_file.filename, commit_sha)
                if content is None:
                    continue
                matches = scan_lines(content.split("\n"), allowed_providers)
            else:
                continue

            inserted += self._store_matches(
                matches, repo_full_name, commit_file.filename, commit_sha,
                actor_login=actor, added_at=added_at,
            )

        stats.inserted += inserted
        return inserted

    async def scan_code_hit(
        self,
        stats: ScanStats,
        hit: CodeSearchHit,
        allowed_providers: Optional[AbstractSet[str]] = None,
    ) -> int:
        """Scan the full text of a code search result."""
        if not is_likely_text_file(hit.file_path):
            return 0

        content = await self._fetch_text(stats, hit.repo_full_name, hit.file_path, hit.ref)
        if content is None:
            return 0

        inserted = self._store_matches(
            scan_lines(content.split("\n"), allowed_providers),
            hit.repo_full_name, hit.file_path, hit.ref,
            source_url=hit.html_url or None,
        )
        stats.inserted += inserted
        return inserted

    async def _run_unit(
        self,
        stats: ScanStats,
        unit: Awaitable,
        description: str,
        isolate: bool,
        default=0,
        repo: Optional[str] = None,
    ):
        """
        Await one unit of work.

        When isolated, a failure is counted in stats.errors and the unit
        yields `default` instead of raising.
        """
        if not isolate:
            return await unit
        try:
            return await unit
        except Exception as e:
            stats.errors += 1
            extra = {"repo": repo} if repo else None
            logger.warning(f"Skipping {description}: {_error_text(e)}", extra=extra)
            return default

    async def _scan_commits(
        self,
        stats: ScanStats,
        commits: List[PushCommit],
        seen: Set[str],
        allowed_providers: Optional[AbstractSet[str]],
        isolate: bool = True,
    ) -> int:
        inserted = 0
        for commit in commits:
            key = f"{commit.repo_full_name}@{commit.commit_sha}"
            if key in seen:
                continue
            seen.add(key)
            inserted += await self._run_unit(
                stats,
                self.scan_commit(stats, commit.repo_full_name, commit.commit_sha,
                                 allowed_providers, commit.actor_login),
                f"{commit.repo_full_name}@{commit.commit_sha[:7]}",
                isolate,
                repo=commit.repo_full_name,
            )
        return inserted

    # ---------------------------------------------------------------
    # Sources
    # ---------------------------------------------------------------

    async def poll_push_events(self) -> FetchResult:
        """
        Poll the activity feed for push commits.

        With backfill enabled, an empty feed falls back to one commit
        search for the configured backfill query.
        """
        try:
            result = await self.client.fetch_push_events()
            if not result.rate_limited and not result.data and self.config.backfill_enabled:
                logger.info(f'No push commits in the activity feed, falling back to commit search "{self.config.backfill_query}"')
                result = await self.client.search_commits(self.config.backfill_query)
        finally:
            self.publish_rate_limits()
        return result

    async def backfill_code(
        self,
        stats: ScanStats,
        query: str,
        seen: Set[str],
        allowed_providers: Optional[AbstractSet[str]],
        isolate: bool = True,
    ) -> bool:
        """Run one code search and scan its hits. False if rate limited."""
        result = await self._run_unit(
            stats, self.client.search_code(query), f'code search "{query}"', isolate, default=None,
        )
        self.publish_rate_limits()
        if result is None:
            return True
        if result.rate_limited:
            await self._wait_for_reset("Code search", result.reset_after_ms)
            return False
        if not result.ok:
            stats.errors += 1
            return True

        stats.backfill_code_items += len(result.data)
        found = 0
        for hit in result.data:
            key = f"{hit.repo_full_name}@{hit.ref}@{hit.file_path}"
            if key in seen:
                continue
            seen.add(key)
            found += await self._run_unit(
                stats,
                self.scan_code_hit(stats, hit, allowed_providers),
                f"{hit.repo_full_name}@{hit.ref}:{hit.file_path}",
                isolate,
                repo=hit.repo_full_name,
            )
        if found:
            logger.info(f"Code search backfill inserted {found} leaks")
        return True

    async def backfill_commits(
        self,
        stats: ScanStats,
        query: str,
        seen: Set[str],
        allowed_providers: Optional[AbstractSet[str]],
        isolate: bool = True,
    ) -> bool:
        """Run one commit search and scan its commits. False if rate limited."""
        result = await self._run_unit(
            stats, self.client.search_commits(query), f'commit search "{query}"', isolate, default=None,
        )
        self.publish_rate_limits()
        if result is None:
            return True
        if result.rate_limited:
            await self._wait_for_reset("Commit search", result.reset_after_ms)
            return False
        if not result.ok:
            stats.errors += 1
            return True

        stats.backfill_commit_items += len(result.data)
        found = await self._scan_commits(stats, result.data, seen, allowed_providers, isolate)
        if found:
            logger.info(f"Commit search backfill inserted {found} leaks")
        return True

    # ---------------------------------------------------------------
    # Scans
    # ---------------------------------------------------------------

    async def run_auto_scan(self, stats: Optional[ScanStats] = None) -> ScanStats:
        """
        Always-on scan restricted to the AI providers.

        Counters accumulate into `stats` as work completes, so a caller
        holding it keeps partial counts if the scan is cut short. A failed
        feed poll counts as an error and is treated as an empty feed.
        """
        stats = stats if stats is not None else ScanStats()
        seen: Set[str] = set()

        result = await self._run_unit(
            stats, self.poll_push_events(), "activity feed poll", True, default=None,
        )
        if result is None:
            result = FetchResult(ok=True, data=[])
        commits = result.data if result.ok and result.data else []
        stats.events_jobs = len(commits)

        if result.rate_limited:
            await self._wait_for_reset("Activity feed", result.reset_after_ms)
            return stats
        if not result.ok:
            stats.errors += 1
            logger.warning("Activity feed request failed")

        logger.info(f"Collected {len(commits)} commits from the activity feed")
        found = await self._scan_commits(stats, commits, seen, AI_PROVIDER_SET)
        if found:
            logger.info(f"Activity feed scan inserted {found} leaks")

        if self.config.backfill_always or (self.config.backfill_on_empty and not commits):
            query = self.next_rotating_query()
            logger.info(f'Backfill (mode={self.config.backfill_mode}, query="{query}")')
            if self.config.backfill_uses_code_search:
                await self.backfill_code(stats, query, seen, AI_PROVIDER_SET)
            if self.config.backfill_uses_commit_search:
                await self.backfill_commits(stats, query, seen, AI_PROVIDER_SET)

        return stats

    async def run_job_scan(self, job: ScanJob) -> Optional[int]:
        """
        Scan for one queued job.

        Returns the number of inserted leaks, or None when the activity
        feed was rate limited and none of the job's searches ran.
        Transport failures propagate so the job is marked as errored.

        Raises:
            ScanQueryError: The job's provider envelope is unusable
        """
        spec = parse_scan_query(job.query)
        plan = plan_for(spec)
        allowed = plan.allowed_providers
        if isinstance(spec, ProviderSet):
            logger.info(
                f"Job {job.id[:8]}: providers [{', '.join(spec.providers)}] -> {len(plan.queries)} queries",
                extra={"job_id": job.id},
            )

        stats = ScanStats()
        seen: Set[str] = set()

        result = await self.poll_push_events()
        if result.rate_limited:
            await self._wait_for_reset("Activity feed", result.reset_after_ms)
            return None
        if not result.ok:
            logger.warning(f"Job {job.id[:8]}: activity feed request failed", extra={"job_id": job.id})

        commits = result.data if result.ok and result.data else []
        await self._scan_commits(stats, commits, seen, allowed, isolate=False)

        queries = plan.queries
        if not queries and (
            self.config.backfill_always or (self.config.backfill_on_empty and not commits)
        ):
            queries = [self.config.default_backfill_query]

        for query in queries:
            logger.info(f'Job {job.id[:8]}: backfill query "{query}"', extra={"job_id": job.id})
            if self.config.backfill_uses_code_search:
                if not await self.backfill_code(stats, query, seen, allowed, isolate=False):
                    continue
            if self.config.backfill_uses_commit_search:
                await self.backfill_commits(stats, query, seen, allowed, isolate=False)

        return stats.inserted

    async def drain_jobs(self, drain: Optional[JobDrainStats] = None) -> JobDrainStats:
        """Process up to JOB_BATCH_SIZE pending jobs, oldest first."""
        drain = drain if drain is not None else JobDrainStats()
        jobs = self.db.fetch_pending_jobs(JOB_BATCH_SIZE)
        if jobs:
            logger.info(f"Processing {len(jobs)} pending scan jobs")

        for job in jobs:
            if not self.db.mark_job_processing(job.id, self._now()):
                logger.warning(f"Job {job.id[:8]} is no longer pending, skipped", extra={"job_id": job.id})
                continue
            drain.processed += 1

            try:
                found = await self.run_job_scan(job)
            except Exception as e:
                drain.errored += 1
                message = _error_text(e)
                logger.error(f"Job {job.id[:8]} failed: {message}", extra={"job_id": job.id})
                self.db.mark_job_finished(job.id, JobStatus.ERROR, error=message, now=self._now())
                continue

            if found is None:
                logger.warning(f"Job {job.id[:8]} done - {RATE_LIMITED_NOTE}", extra={"job_id": job.id})
                self.db.mark_job_finished(job.id, JobStatus.DONE, note=RATE_LIMITED_NOTE, now=self._now())
                continue

            drain.inserted += found
            if found:
                logger.info(f"Job {job.id[:8]} done - {found} leaks inserted",
                            extra={"job_id": job.id, "inserted": found})
                self.db.mark_job_finished(job.id, JobStatus.DONE, inserted=found, now=self._now())
            else:
                logger.info(f"Job {job.id[:8]} done - {NO_LEAKS_NOTE}", extra={"job_id": job.id})
                self.db.mark_job_finished(job.id, JobStatus.DONE, note=NO_LEAKS_NOTE, now=self._now())

        return drain

    # ---------------------------------------------------------------
    # Loop
    # ---------------------------------------------------------------

    async def run_cycle(self) -> PipelineStatus:
        """Run one full cycle. Errors are logged, never raised."""
        self.status.cycle_count += 1
        cycle = self.status.cycle_count
        started = self._now()
        auto = ScanStats()
        jobs = JobDrainStats()
        logger.info(f"----- Cycle #{cycle} started -----", extra={"cycle": cycle})

        try:
            self.run_retention()

            spawned = self.db.enqueue_due_schedules(started)
            if spawned:
                logger.info(f"Promoted {len(spawned)} due schedules to scan jobs", extra={"cycle": cycle})

            await self.drain_jobs(jobs)
            await self.run_auto_scan(auto)
            logger.info(
                f"Auto scan finished - {auto.inserted} new leaks this cycle",
                extra={"cycle": cycle, "inserted": auto.inserted},
            )
        except Exception as e:
            logger.error(f"Cycle #{cycle} failed: {_error_text(e)}", exc_info=True, extra={"cycle": cycle})

        self.status.record_cycle(started, self._now(), auto, jobs)
        self.publish_status()
        return self.status

    async def run_forever(self) -> None:
        logger.info(f"Leak radar worker started, polling every {self.config.poll_interval_ms / 1000:.0f}s")
        self.publish_initial_status()
        while True:
            await self.run_cycle()
            await self._sleep(self.config.poll_interval_ms / 1000)
