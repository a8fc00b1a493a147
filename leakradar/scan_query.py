"""
Job query parsing.

A ScanJob's query column holds either a raw GitHub search string or a JSON
envelope such as {"providers": ["openai", "mistral"]}. parse_scan_query
turns it into a RawQuery or a ProviderSet, and plan_for expands that into
the search queries and detector allowlist a job scan runs with.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import FrozenSet, List, Optional, Tuple, Union

from .config import MANUAL_PROVIDERS, build_queries_for_providers

logger = logging.getLogger(__name__)

VALID_PROVIDERS = frozenset(MANUAL_PROVIDERS)


class ScanQueryError(ValueError):
    """A provider envelope that cannot be turned into a scan."""


@dataclass(frozen=True)
class RawQuery:
    text: str


@dataclass(frozen=True)
class ProviderSet:
    # Ordered, de-duplicated provider ids
    providers: Tuple[str, ...]
    # Names dropped because they are not known providers
    rejected: Tuple[str, ...] = ()

    @property
    def allowed(self) -> FrozenSet[str]:
        return frozenset(self.providers)


QuerySpec = Union[RawQuery, ProviderSet]


@dataclass
class ScanPlan:
    queries: List[str] = field(default_factory=list)
    allowed_providers: Optional[FrozenSet[str]] = None


def _parse_providers(raw_providers) -> ProviderSet:
    if not isinstance(raw_providers, list) or not raw_providers:
        raise ScanQueryError("'providers' must be a non-empty list of provider ids")

    providers: List[str] = []
    rejected: List[str] = []
    for item in raw_providers:
        if not isinstance(item, str):
            rejected.append(repr(item))
            continue
        name = item.strip().lower()
        if not name:
            continue
        if name not in VALID_PROVIDERS:
            rejected.append(name)
        elif name not in providers:
            providers.append(name)

    if not providers:
        raise ScanQueryError(
            f"No known providers in {raw_providers!r}; "
            f"expected any of: {', '.join(MANUAL_PROVIDERS)}"
        )
    if rejected:
        logger.warning(f"Ignoring unknown providers in job query: {', '.join(rejected)}")

    return ProviderSet(tuple(providers), tuple(rejected))


def parse_scan_query(value: Optional[str]) -> Optional[QuerySpec]:
    """
    Parse a job's query column.

    Args:
        value: Raw column value, possibly None or empty

    Returns:
        None for an empty query, a ProviderSet for a JSON object with a
        "providers" key, otherwise a RawQuery

    Raises:
        ScanQueryError: The envelope names no usable provider
    """
    if not value or not value.strip():
        return None

    try:
        parsed = json.loads(value)
    except ValueError:
        return RawQuery(value)

    if not isinstance(parsed, dict) or "providers" not in parsed:
        return RawQuery(value)

    return _parse_providers(parsed["providers"])


def plan_for(spec: Optional[QuerySpec]) -> ScanPlan:
    """Search queries plus detector allowlist for a parsed query."""
    if spec is None:
        return ScanPlan()
    if isinstance(spec, RawQuery):
        return ScanPlan(queries=[spec.text])
    return ScanPlan(
        queries=build_queries_for_providers(spec.providers),
        allowed_providers=spec.allowed,
    )


def encode_providers(providers) -> str:
    """Build the JSON envelope stored in a job's query column."""
    return json.dumps({"providers": list(providers)})
