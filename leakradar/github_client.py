"""
GitHub REST client with rate-limit handling.

Every response is inspected for the x-ratelimit-* headers:
    - remaining == 0, or a 403/429 status, means the window is exhausted.
      The client waits for the reset (plus a 1s margin) and retries while
      its retry budget lasts, otherwise it hands the delay back to the
      caller in FetchResult.reset_after_ms.
    - a low but nonzero remaining count triggers a short preemptive sleep
      so bursts do not run the budget dry.

Rate limiting and HTTP errors never raise. Transport faults
(aiohttp.ClientError, asyncio.TimeoutError) do, and callers treat them as
a failed unit of work.
"""
import asyncio
import base64
import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import quote, quote_plus

import aiohttp
from github import Auth, BadCredentialsException, Github, GithubException

from .config import EVENTS_PAGE_PAUSE_SECONDS, EVENTS_PAGES_PER_POLL, EVENTS_PER_PAGE, SEARCH_PER_PAGE

logger = logging.getLogger(__name__)

API_ROOT = "https://api.github.com"
USER_AGENT = "leak-radar-worker"
ACCEPT_JSON = "application/vnd.github+json"
ACCEPT_COMMIT_SEARCH = "application/vnd.github.cloak-preview+json"

RATE_LIMIT_STATUSES = (403, 429)
RESET_SAFETY_MARGIN_MS = 1000
LOW_REMAINING_THRESHOLD = 5
MAX_PREEMPTIVE_WAIT_MS = 5000
REQUEST_TIMEOUT_SECONDS = 30


class Endpoint(str, Enum):
    EVENTS = "events"
    COMMIT = "commit"
    COMMIT_SEARCH = "commit_search"
    CODE_SEARCH = "code_search"
    FILE_CONTENT = "file_content"


# Rate-limit categories reported downstream. Commit details and file
# contents draw on the same core budget as the events feed.
CATEGORY_EVENTS = "events"
CATEGORY_COMMITS = "commits"
CATEGORY_CODE = "code"

ENDPOINT_CATEGORIES = {
    Endpoint.EVENTS: CATEGORY_EVENTS,
    Endpoint.COMMIT: CATEGORY_EVENTS,
    Endpoint.FILE_CONTENT: CATEGORY_EVENTS,
    Endpoint.COMMIT_SEARCH: CATEGORY_COMMITS,
    Endpoint.CODE_SEARCH: CATEGORY_CODE,
}

# Field prefixes of the "rate_limit" runtime-status document
STATUS_PREFIXES = {
    CATEGORY_EVENTS: "events",
    CATEGORY_COMMITS: "commit",
    CATEGORY_CODE: "code",
}


@dataclass
class FetchResult:
    ok: bool
    data: Any = None
    reset_after_ms: Optional[int] = None
    remaining: Optional[int] = None
    limit: Optional[int] = None

    @property
    def rate_limited(self) -> bool:
        return bool(self.reset_after_ms and self.reset_after_ms > 0)


@dataclass
class RateLimitSnapshot:
    remaining: Optional[int] = None
    limit: Optional[int] = None
    reset_after_ms: Optional[int] = None
    updated_at: Optional[str] = None


@dataclass
class PushCommit:
    repo_full_name: str
    commit_sha: str
    actor_login: Optional[str] = None


@dataclass
class CommitFile:
    filename: str
    patch: Optional[str] = None


@dataclass
class CommitDetails:
    files: List[CommitFile] = field(default_factory=list)
    committed_at: Optional[str] = None
    author_login: Optional[str] = None


@dataclass
class CodeSearchHit:
    repo_full_name: str
    file_path: str
    ref: str
    html_url: str


# ===================================================================
# RESPONSE PARSING
# ===================================================================

def _header_int(headers, name: str) -> Optional[int]:
    raw = headers.get(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def _short_url(url: str) -> str:
    return url.split("?", 1)[0].replace(API_ROOT, "")


def parse_push_events(events: Any) -> List[PushCommit]:
    """
    Flatten PushEvents into (repo, sha) pairs.

    Events without a commit list contribute their head SHA.
    """
    commits = []
    if not isinstance(events, list):
        return commits

    for event in events:
        if not isinstance(event, dict) or event.get("type") != "PushEvent":
            continue
        repo_name = (event.get("repo") or {}).get("name")
        if not repo_name:
            continue
        actor_login = (event.get("actor") or {}).get("login")
        payload = event.get("payload") or {}

        shas = [c.get("sha") for c in payload.get("commits") or [] if c.get("sha")]
        if not shas and payload.get("head"):
            shas = [payload["head"]]

        for sha in shas:
            commits.append(PushCommit(repo_name, sha, actor_login))

    return commits


def parse_commit_details(data: Dict[str, Any]) -> CommitDetails:
    files = [
        CommitFile(filename=f["filename"], patch=f.get("patch"))
        for f in data.get("files") or []
        if f.get("filename")
    ]
    author = (data.get("commit") or {}).get("author") or {}
    return CommitDetails(
        files=files,
        committed_at=author.get("date"),
        author_login=(data.get("author") or {}).get("login"),
    )


def _ref_from_html_url(html_url: str) -> Optional[str]:
    # https://github.com/<owner>/<repo>/blob/<ref>/<path>
    parts = html_url.split("/blob/", 1)
    if len(parts) != 2:
        return None
    ref = parts[1].split("/", 1)[0]
    return ref or None


def parse_code_search(data: Dict[str, Any]) -> List[CodeSearchHit]:
    hits = []
    for item in data.get("items") or []:
        repository = item.get("repository") or {}
        if repository.get("fork"):
            continue
        html_url = item.get("html_url", "")
        ref = (
            repository.get("default_branch")
            or _ref_from_html_url(html_url)
            or "HEAD"
        )
        hits.append(CodeSearchHit(
            repo_full_name=repository.get("full_name", ""),
            file_path=item.get("path", ""),
            ref=ref,
            html_url=html_url,
        ))
    return [hit for hit in hits if hit.repo_full_name and hit.file_path]


def parse_commit_search(data: Dict[str, Any]) -> List[PushCommit]:
    commits = []
    for item in data.get("items") or []:
        repository = item.get("repository") or {}
        if repository.get("fork") or not item.get("sha"):
            continue
        commits.append(PushCommit(
            repo_full_name=repository.get("full_name", ""),
            commit_sha=item["sha"],
            actor_login=(item.get("author") or {}).get("login"),
        ))
    return [commit for commit in commits if commit.repo_full_name]


def decode_file_content(data: Any, max_bytes: int) -> Optional[str]:
    """
    Decode a contents API payload.

    Returns None for directories, symlinks and submodules, for files
    larger than max_bytes, and for anything not base64 encoded.
    """
    if not isinstance(data, dict) or data.get("type") != "file":
        return None
    if (data.get("size") or 0) > max_bytes:
        return None
    if data.get("encoding") != "base64" or not data.get("content"):
        return None
    return base64.b64decode(data["content"]).decode("utf-8", errors="replace")


# ===================================================================
# CLIENT
# ===================================================================

class GitHubClient:
    """Sequential GitHub API client sharing one rate-limit budget."""

    def __init__(
        self,
        token: str,
        session: Optional[aiohttp.ClientSession] = None,
        max_retries: int = 1,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.token = token
        self.max_retries = max_retries
        self.rate_limits: Dict[str, RateLimitSnapshot] = {
            category: RateLimitSnapshot() for category in STATUS_PREFIXES
        }
        self._session = session
        self._owns_session = session is None
        self._sleep = sleep
        self._clock = clock

    async def __aenter__(self):
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _ensure_session(self):
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=REQUEST_TIMEOUT_SECONDS)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    # ---------------------------------------------------------------
    # Rate limit bookkeeping
    # ---------------------------------------------------------------

    def compute_reset_after_ms(self, reset_epoch_seconds: int) -> int:
        """Milliseconds until the window resets, plus the safety margin."""
        now_ms = int(self._clock() * 1000)
        return max(reset_epoch_seconds * 1000 - now_ms, 0) + RESET_SAFETY_MARGIN_MS

    def _parse_rate_limit(self, response):
        headers = response.headers
        remaining = _header_int(headers, "x-ratelimit-remaining")
        limit = _header_int(headers, "x-ratelimit-limit")
        reset = _header_int(headers, "x-ratelimit-reset")

        if remaining is not None and limit is not None:
            logger.debug(f"API {_short_url(str(response.url))} -> remaining={remaining}/{limit}")

        reset_after_ms = None
        limited = remaining == 0 or response.status in RATE_LIMIT_STATUSES
        if limited and reset is not None:
            reset_after_ms = self.compute_reset_after_ms(reset)
        elif response.status in RATE_LIMIT_STATUSES:
            # Secondary rate limits send Retry-After instead of a reset time
            retry_after = _header_int(headers, "retry-after")
            if retry_after is not None:
                reset_after_ms = retry_after * 1000 + RESET_SAFETY_MARGIN_MS

        return remaining, limit, reset_after_ms

    def _record(self, endpoint: Endpoint, remaining, limit, reset_after_ms) -> None:
        self.rate_limits[ENDPOINT_CATEGORIES[endpoint]] = RateLimitSnapshot(
            remaining=remaining,
            limit=limit,
            reset_after_ms=reset_after_ms,
            updated_at=datetime.now(timezone.utc).isoformat(),
        )

    def rate_limit_status(self) -> Dict[str, Any]:
        """Flat document written under the "rate_limit" status key."""
        status: Dict[str, Any] = {}
        updated = []
        for category, prefix in STATUS_PREFIXES.items():
            snapshot = self.rate_limits[category]
            status[f"{prefix}ResetAfterMs"] = snapshot.reset_after_ms
            status[f"{prefix}Remaining"] = snapshot.remaining
            status[f"{prefix}Limit"] = snapshot.limit
            if snapshot.updated_at:
                updated.append(snapshot.updated_at)
        status["updatedAt"] = max(updated) if updated else None
        return status

    async def _throttle(self, remaining: Optional[int]) -> None:
        if remaining is not None and 0 < remaining <= LOW_REMAINING_THRESHOLD:
            wait_ms = min(remaining * 1000, MAX_PREEMPTIVE_WAIT_MS)
            logger.warning(f"Rate limit nearly exhausted (remaining={remaining}), pausing {wait_ms / 1000:.0f}s")
            await self._sleep(wait_ms / 1000)

    # ---------------------------------------------------------------
    # Requests
    # ---------------------------------------------------------------

    async def _request(self, endpoint: Endpoint, url: str, accept: str = ACCEPT_JSON) -> FetchResult:
        """
        GET a GitHub API URL.

        Args:
            endpoint: Which capability is being called (selects the
                rate-limit category to update)
            url: Absolute API URL
            accept: Accept header

        Returns:
            FetchResult; ok is False for rate limiting and non-2xx statuses
        """
        session = self._ensure_session()
        headers = {
            "Authorization": f"Bearer {self.token}",
            "User-Agent": USER_AGENT,
            "Accept": accept,
        }
        retries_left = self.max_retries

        while True:
            async with session.get(url, headers=headers) as response:
                remaining, limit, reset_after_ms = self._parse_rate_limit(response)
                self._record(endpoint, remaining, limit, reset_after_ms)

                if response.status in RATE_LIMIT_STATUSES:
                    if not reset_after_ms or retries_left <= 0:
                        return FetchResult(False, None, reset_after_ms, remaining, limit)
                elif not 200 <= response.status < 300:
                    logger.warning(f"HTTP {response.status} for {_short_url(url)}")
                    return FetchResult(False, None, reset_after_ms, remaining, limit)
                else:
                    data = await response.json(content_type=None)
                    await self._throttle(remaining)
                    return FetchResult(True, data, reset_after_ms, remaining, limit)

            retries_left -= 1
            logger.warning(
                f"HTTP {response.status} (rate limited) for {_short_url(url)} - "
                f"waiting {math.ceil(reset_after_ms / 1000)}s before retrying"
            )
            await self._sleep(reset_after_ms / 1000)

    async def fetch(self, endpoint: Endpoint, **params) -> FetchResult:
        """Dispatch to the capability named by endpoint."""
        handlers = {
            Endpoint.EVENTS: self.fetch_push_events,
            Endpoint.COMMIT: self.fetch_commit,
            Endpoint.COMMIT_SEARCH: self.search_commits,
            Endpoint.CODE_SEARCH: self.search_code,
            Endpoint.FILE_CONTENT: self.fetch_file_content,
        }
        return await handlers[Endpoint(endpoint)](**params)

    async def fetch_push_events(self, pages: int = EVENTS_PAGES_PER_POLL) -> FetchResult:
        """
        Collect public push commits from the first pages of /events.

        A failed later page keeps the commits already collected. The
        result is ok as long as at least one page was read.
        """
        commits: List[PushCommit] = []
        last = FetchResult(ok=False)
        pages_read = 0

        for page in range(1, pages + 1):
            result = await self._request(
                Endpoint.EVENTS,
                f"{API_ROOT}/events?per_page={EVENTS_PER_PAGE}&page={page}",
            )
            last = result
            if not result.ok:
                break

            pages_read += 1
            commits.extend(parse_push_events(result.data))
            if result.rate_limited:
                break
            if page < pages:
                await self._sleep(EVENTS_PAGE_PAUSE_SECONDS)

        return FetchResult(
            ok=pages_read > 0,
            data=commits if pages_read else None,
            reset_after_ms=last.reset_after_ms,
            remaining=last.remaining,
            limit=last.limit,
        )

    async def fetch_commit(self, repo_full_name: str, commit_sha: str) -> FetchResult:
        result = await self._request(
            Endpoint.COMMIT,
            f"{API_ROOT}/repos/{repo_full_name}/commits/{commit_sha}",
        )
        if result.ok and isinstance(result.data, dict):
            result.data = parse_commit_details(result.data)
        elif result.ok:
            result.data = CommitDetails()
        return result

    async def search_commits(self, query: str, per_page: int = SEARCH_PER_PAGE) -> FetchResult:
        """Commit search, newest first, forks excluded."""
        url = (
            f"{API_ROOT}/search/commits?q={quote_plus(query)}"
            f"&sort=committer-date&order=desc&per_page={per_page}"
        )
        result = await self._request(Endpoint.COMMIT_SEARCH, url, accept=ACCEPT_COMMIT_SEARCH)
        if not result.ok:
            return result

        data = result.data if isinstance(result.data, dict) else {}
        result.data = parse_commit_search(data)
        logger.info(f"Commit search total_count={data.get('total_count', 'N/A')}, items={len(result.data)}")
        return result

    async def search_code(self, query: str, per_page: int = SEARCH_PER_PAGE) -> FetchResult:
        """Code search, most recently indexed first, forks excluded."""
        url = (
            f"{API_ROOT}/search/code?q={quote_plus(query)}"
            f"&sort=indexed&order=desc&per_page={per_page}"
        )
        result = await self._request(Endpoint.CODE_SEARCH, url)
        if not result.ok:
            return result

        data = result.data if isinstance(result.data, dict) else {}
        result.data = parse_code_search(data)
        logger.info(f"Code search total_count={data.get('total_count', 'N/A')}, items={len(result.data)}")
        return result

    async def fetch_file_content(
        self,
        repo_full_name: str,
        file_path: str,
        ref: str,
        max_bytes: int,
    ) -> FetchResult:
        """Fetch a file's text at ref; data is None when the file is rejected."""
        encoded_path = "/".join(quote(part, safe="") for part in file_path.split("/"))
        url = f"{API_ROOT}/repos/{repo_full_name}/contents/{encoded_path}?ref={quote(ref, safe='')}"
        result = await self._request(Endpoint.FILE_CONTENT, url)
        if result.ok:
            result.data = decode_file_content(result.data, max_bytes)
        return result


# ===================================================================
# STARTUP PREFLIGHT
# ===================================================================

def preflight_token(token: str) -> Optional[Dict[str, Any]]:
    """
    Check the token against the API before the loop starts.

    Logs the authenticated login and the core rate-limit budget. Failures
    are logged and reported as None; they never stop the worker.
    """
    github_client = Github(auth=Auth.Token(token), user_agent=USER_AGENT)
    try:
        login = github_client.get_user().login
        remaining, limit = github_client.rate_limiting
        reset_at = datetime.fromtimestamp(github_client.rate_limiting_resettime, timezone.utc)
        logger.info(f"Authenticated as {login}: core rate limit {remaining}/{limit}, resets {reset_at.isoformat()}")
        return {"login": login, "remaining": remaining, "limit": limit, "reset_at": reset_at.isoformat()}
    except BadCredentialsException:
        logger.error("GitHub rejected the configured token (401 Bad credentials)")
        return None
    except GithubException as e:
        logger.warning(f"Token preflight failed: HTTP {e.status}")
        return None
    except Exception as e:
        logger.warning(f"Token preflight failed: {e}")
        return None
    finally:
        github_client.close()
