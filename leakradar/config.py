"""
Worker configuration and provider query tables.

Configuration is read once from the environment at startup. Nothing in
this module is mutated at runtime.
"""
import os
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

# ===================================================================
# PROVIDERS
# ===================================================================

# Providers scanned by the always-on auto scan
AI_PROVIDERS = (
    "openai", "anthropic", "google", "grok", "kimi", "glm", "deepseek", "mistral",
)

# Providers a manual/scheduled job may ask for
MANUAL_PROVIDERS = AI_PROVIDERS + (
    "stripe", "aws", "github", "slack", "sendgrid", "firebase",
    "supabase", "vercel", "npm", "discord",
)

# provider -> GitHub search queries used for backfill
PROVIDER_QUERIES: Dict[str, List[str]] = {
    # AI models
    "openai": ["sk-proj- in:file", "OPENAI_API_KEY in:file"],
    "anthropic": ["sk-ant- in:file", "ANTHROPIC_API_KEY in:file"],
    "google": ["AIzaSy in:file"],
    "grok": ["xai- in:file", "GROK_API_KEY in:file"],
    "kimi": ["moonshot in:file sk-", "MOONSHOT_API_KEY in:file"],
    "glm": ["zhipuai in:file api_key", "GLM_API_KEY in:file"],
    "deepseek": ["DEEPSEEK_API_KEY in:file", "deepseek sk- in:file"],
    "mistral": ["MISTRAL_API_KEY in:file"],

    # Other services (manual scans only)
    "stripe": ["sk_live_ in:file"],
    "aws": ["AKIA in:file"],
    "github": ["ghp_ in:file", "github_pat_ in:file"],
    "slack": ["xoxb- in:file"],
    "sendgrid": ["SG. in:file extension:env"],
    "firebase": ["FIREBASE in:file extension:env"],
    "supabase": ["sbp_ in:file"],
    "vercel": ["vercel_ in:file extension:env"],
    "npm": ["npm_ in:file extension:npmrc"],
    "discord": ["DISCORD_TOKEN in:file"],
}


def build_queries_for_providers(providers: Sequence[str]) -> List[str]:
    """Expand a provider list into its GitHub search queries, in order."""
    queries = []
    for provider in providers:
        queries.extend(PROVIDER_QUERIES.get(provider, []))
    return queries


# Auto-scan backfill rotates through the AI provider queries, one per cycle
ROTATING_QUERIES = build_queries_for_providers(AI_PROVIDERS)

# ===================================================================
# OPERATIONAL CONSTANTS
# ===================================================================

JOB_BATCH_SIZE = 5
EVENTS_PAGES_PER_POLL = 2
EVENTS_PER_PAGE = 100
EVENTS_PAGE_PAUSE_SECONDS = 0.5
SEARCH_PER_PAGE = 50
MAX_FILES_PER_COMMIT = 15
MIN_SCHEDULE_INTERVAL_MINUTES = 60

BACKFILL_MODES = ("commits", "code", "both")
LOG_FORMATS = ("text", "json")


# ===================================================================
# ENVIRONMENT
# ===================================================================

def _env_int(name: str, default: int, minimum: Optional[int] = None) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    if minimum is not None and value < minimum:
        return default
    return value


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() == "true"


@dataclass
class WorkerConfig:
    """Everything the pipeline reads from its environment."""
    github_token: Optional[str] = None
    poll_interval_ms: int = 15000
    backfill_enabled: bool = False
    backfill_query: str = "sk-proj-"
    backfill_on_empty: bool = True
    default_backfill_query: str = "sk-proj- in:file"
    backfill_mode: str = "commits"
    backfill_always: bool = False
    max_file_bytes: int = 200000
    retention_days: int = 0
    retention_run_interval_ms: int = 3600000
    fingerprint_salt: str = "local-dev"
    database_path: str = "leakradar.db"
    dedup_cache_size: int = 10000
    log_format: str = "text"

    @property
    def backfill_uses_code_search(self) -> bool:
        return self.backfill_mode in ("code", "both")

    @property
    def backfill_uses_commit_search(self) -> bool:
        return self.backfill_mode in ("commits", "both")

    def describe(self) -> Dict[str, object]:
        """Loggable view of the config with the token masked."""
        token = self.github_token
        return {
            "github_token": f"set ({token[:8]}...)" if token else "not set",
            "poll_interval_ms": self.poll_interval_ms,
            "backfill_enabled": self.backfill_enabled,
            "backfill_mode": self.backfill_mode,
            "backfill_always": self.backfill_always,
            "backfill_on_empty": self.backfill_on_empty,
            "max_file_bytes": self.max_file_bytes,
            "retention_days": self.retention_days,
            "retention_run_interval_ms": self.retention_run_interval_ms,
            "database_path": self.database_path,
        }


def load_config() -> WorkerConfig:
    """Build a WorkerConfig from environment variables."""
    backfill_mode = os.environ.get("WORKER_BACKFILL_MODE", "commits")
    if backfill_mode not in BACKFILL_MODES:
        backfill_mode = "commits"

    log_format = os.environ.get("LOG_FORMAT", "text")
    if log_format not in LOG_FORMATS:
        log_format = "text"

    salt = (
        os.environ.get("KEY_FINGERPRINT_SALT")
        or os.environ.get("REDACTION_SALT")
        or "local-dev"
    )

    return WorkerConfig(
        github_token=os.environ.get("GITHUB_TOKEN") or None,
        poll_interval_ms=_env_int("WORKER_POLL_INTERVAL_MS", 15000, minimum=1000),
        backfill_enabled=_env_flag("WORKER_BACKFILL_ENABLED"),
        backfill_query=os.environ.get("WORKER_BACKFILL_QUERY", "sk-proj-"),
        backfill_on_empty=_env_flag("WORKER_BACKFILL_ON_EMPTY", default=True),
        default_backfill_query=os.environ.get(
            "WORKER_DEFAULT_BACKFILL_QUERY", "sk-proj- in:file"
        ),
        backfill_mode=backfill_mode,
        backfill_always=_env_flag("WORKER_BACKFILL_ALWAYS"),
        max_file_bytes=_env_int("WORKER_MAX_FILE_BYTES", 200000, minimum=1),
        retention_days=_env_int("WORKER_RETENTION_DAYS", 0, minimum=0),
        retention_run_interval_ms=_env_int(
            "WORKER_RETENTION_RUN_INTERVAL_MS", 3600000, minimum=1000
        ),
        fingerprint_salt=salt,
        database_path=os.environ.get("LEAKRADAR_DB_PATH", "leakradar.db"),
        dedup_cache_size=_env_int("LEAKRADAR_DEDUP_CACHE_SIZE", 10000, minimum=1),
        log_format=log_format,
    )
