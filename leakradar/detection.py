"""
Secret detection for single lines of source text.

DETECTION METHODS:
    1. Context rules: a provider keyword anywhere in the line (e.g.
       "deepseek") unlocks a looser value pattern for that provider, so an
       ambiguous "sk-" key is attributed to the provider named beside it.
    2. Prefix rules: provider-distinctive prefixes confirmed by length and
       charset. A value already claimed by a context rule is skipped here.

Every candidate passes the false-positive filters before it is accepted:
placeholder lexicon, low character variety, name-side-of-assignment and
comment-only lines.
"""
import hashlib
import re
from collections import Counter
from dataclasses import dataclass
from typing import AbstractSet, Iterable, Iterator, List, NamedTuple, Optional, Pattern


class Match(NamedTuple):
    provider: str
    value: str


@dataclass(frozen=True)
class ProviderRule:
    provider: str
    pattern: Pattern
    min_length: int


@dataclass(frozen=True)
class ContextRule:
    provider: str
    keywords: Pattern
    pattern: Pattern
    min_length: int


# ===================================================================
# FALSE POSITIVE FILTERS
# ===================================================================

# Placeholders, variable names and templating rather than real keys
PLACEHOLDER_PATTERNS = [
    re.compile(
        r'^.{0,10}(your|my|test|fake|dummy|example|sample|replace|xxx'
        r'|placeholder|insert|todo|fixme)',
        re.IGNORECASE
    ),
    re.compile(r'^.{0,6}(api[_-]?key|secret[_-]?key|access[_-]?key|token)', re.IGNORECASE),
    re.compile(r'<[^>]+>'),                 # <YOUR_KEY_HERE>
    re.compile(r'\$\{[^}]+\}'),             # ${ENV_VAR}
    re.compile(r'process\.env', re.IGNORECASE),
    re.compile(r'os\.environ', re.IGNORECASE),
    re.compile(r'\{\{[^}]+\}\}'),           # {{API_KEY}}
    re.compile(r'^.{0,4}(0{8,}|1{8,}|a{8,}|x{8,}|#{8,}|\*{8,})', re.IGNORECASE),
]

# Leading "sk-", "sk-proj-", "xai-" ... stripped before judging the body
KEY_PREFIX = re.compile(r'^[a-zA-Z_-]{2,10}[-_]')
COMMENT_KEY_PREFIX = re.compile(r'^[a-zA-Z_-]{2,12}[-_]')

COMMENT_LINE = re.compile(r'^(#|//|/\*|\*|--|;)')
ASSIGNED_AFTER = re.compile(r'^[=:]')
DECLARATION_BEFORE = re.compile(r'(?:export|const|let|var|def|set)\s*$', re.IGNORECASE)

MIN_BODY_LENGTH_FOR_VARIETY = 10
MAX_DISTINCT_CHARS_LOW_VARIETY = 5
MAX_SINGLE_CHAR_SHARE = 0.6
MIN_COMMENTED_BODY_LENGTH = 20


def is_placeholder(value: str) -> bool:
    return any(pattern.search(value) for pattern in PLACEHOLDER_PATTERNS)


def has_low_variety(value: str) -> bool:
    """
    Check if the key body is too repetitive to be a generated secret.

    The provider prefix is removed first. Bodies shorter than 10
    characters are not judged.
    """
    body = KEY_PREFIX.sub("", value, count=1)
    if len(body) < MIN_BODY_LENGTH_FOR_VARIETY:
        return False

    counts = Counter(body)

    if len(counts) <= MAX_DISTINCT_CHARS_LOW_VARIETY:
        return True

    return max(counts.values()) / len(body) > MAX_SINGLE_CHAR_SHARE


def is_name_side(line: str, value: str) -> bool:
    """True when the match is the variable name of an assignment, not its value."""
    idx = line.find(value)
    if idx < 0:
        return False

    end = idx + len(value)
    after = line[end:end + 5].strip()
    if ASSIGNED_AFTER.match(after):
        return True

    before = line[max(0, idx - 30):idx].strip()
    return bool(DECLARATION_BEFORE.search(before))


def is_commentary(line: str, value: str) -> bool:
    """Short values on comment-only lines without an assignment are prose."""
    stripped = line.strip()
    if not COMMENT_LINE.match(stripped):
        return False
    if "=" in stripped or ":" in stripped:
        return False
    body = COMMENT_KEY_PREFIX.sub("", value, count=1)
    return len(body) < MIN_COMMENTED_BODY_LENGTH


def is_false_positive(line: str, value: str) -> bool:
    return (
        is_placeholder(value)
        or has_low_variety(value)
        or is_name_side(line, value)
        or is_commentary(line, value)
    )


# ===================================================================
# DETECTION RULES
# ===================================================================

# sk- classification:
#   sk-proj- / sk-svcacct-     -> openai
#   sk-ant-                    -> anthropic
#   moonshot/deepseek in line  -> kimi / deepseek (context rules)
#   bare sk- with 48+ chars    -> openai (best effort, see DESIGN.md)
PROVIDER_RULES = [
    # OpenAI
    ProviderRule("openai", re.compile(r'sk-proj-[a-zA-Z0-9_-]{20,}'), 28),
    ProviderRule("openai", re.compile(r'sk-svcacct-[a-zA-Z0-9_-]{20,}'), 30),
    ProviderRule("openai", re.compile(r'sk-[a-zA-Z0-9]{48,}'), 51),

    # Anthropic
    ProviderRule("anthropic", re.compile(r'sk-ant-[a-zA-Z0-9_-]{20,}'), 30),

    # Google API key
    ProviderRule("google", re.compile(r'AIzaSy[0-9A-Za-z\-_]{33}'), 39),

    # Grok / xAI
    ProviderRule("grok", re.compile(r'xai-[a-zA-Z0-9]{20,}'), 24),

    # Kimi / Moonshot explicit prefix
    ProviderRule("kimi", re.compile(r'msk-[a-zA-Z0-9]{20,}'), 24),

    # GLM / Zhipu id.secret
    ProviderRule("glm", re.compile(r'[a-f0-9]{32}\.[a-zA-Z0-9]{16,}'), 49),

    # Stripe live secret / restricted
    ProviderRule("stripe", re.compile(r'sk_live_[0-9a-zA-Z]{24,}'), 32),
    ProviderRule("stripe", re.compile(r'rk_live_[0-9a-zA-Z]{24,}'), 32),

    # AWS access key id
    ProviderRule("aws", re.compile(r'AKIA[0-9A-Z]{16}'), 20),
    ProviderRule("aws", re.compile(r'ASIA[0-9A-Z]{16}'), 20),

    # Slack
    ProviderRule("slack", re.compile(r'xox[baprs]-[0-9A-Za-z-]{24,}'), 30),

    # SendGrid
    ProviderRule("sendgrid", re.compile(r'SG\.[A-Za-z0-9_-]{22}\.[A-Za-z0-9_-]{43}'), 66),

    # GitHub classic and fine-grained tokens
    ProviderRule("github", re.compile(r'ghp_[A-Za-z0-9]{36}'), 40),
    ProviderRule("github", re.compile(r'github_pat_[A-Za-z0-9_]{22,}'), 30),
    ProviderRule("github", re.compile(r'gho_[A-Za-z0-9]{36}'), 40),
    ProviderRule("github", re.compile(r'ghs_[A-Za-z0-9]{36}'), 40),

    # NPM
    ProviderRule("npm", re.compile(r'npm_[A-Za-z0-9]{36}'), 40),

    # Firebase cloud messaging server key
    ProviderRule("firebase", re.compile(r'AAAA[A-Za-z0-9_-]{7}:[A-Za-z0-9_-]{140}'), 152),

    # Supabase
    ProviderRule("supabase", re.compile(r'sbp_[a-f0-9]{40}'), 44),

    # Vercel
    ProviderRule("vercel", re.compile(r'vercel_[A-Za-z0-9]{24}'), 31),

    # Discord bot token
    ProviderRule("discord", re.compile(r'[A-Za-z0-9_-]{24}\.[A-Za-z0-9_-]{6}\.[A-Za-z0-9_-]{27}'), 59),
]

CONTEXT_RULES = [
    ContextRule(
        "kimi",
        re.compile(r'(?:moonshot|kimi|月之暗面)', re.IGNORECASE),
        re.compile(r'sk-[a-zA-Z0-9]{20,}'),
        23,
    ),
    ContextRule(
        "deepseek",
        re.compile(r'deepseek', re.IGNORECASE),
        re.compile(r'sk-[a-zA-Z0-9]{20,}'),
        23,
    ),
    # Mistral keys have no prefix: take the assigned value
    ContextRule(
        "mistral",
        re.compile(r'mistral', re.IGNORECASE),
        re.compile(r'[=:]\s*["\']?([a-zA-Z0-9]{32,})["\']?'),
        32,
    ),
    ContextRule(
        "openai",
        re.compile(r'openai', re.IGNORECASE),
        re.compile(r'sk-[a-zA-Z0-9]{20,}'),
        23,
    ),
    ContextRule(
        "anthropic",
        re.compile(r'anthropic', re.IGNORECASE),
        re.compile(r'sk-ant-[a-zA-Z0-9_-]{10,}'),
        20,
    ),
    ContextRule(
        "google",
        re.compile(r'(?:google|gemini)', re.IGNORECASE),
        re.compile(r'AIzaSy[0-9A-Za-z\-_]{33}'),
        39,
    ),
    ContextRule(
        "glm",
        re.compile(r'(?:zhipu|glm|chatglm|智谱)', re.IGNORECASE),
        re.compile(r'[a-f0-9]{32}\.[a-zA-Z0-9]{16,}'),
        49,
    ),
]


def _value_of(match) -> str:
    # Rules with a capture group report the group, the rest the whole match
    if match.re.groups:
        return match.group(1)
    return match.group(0)


def scan_line(line: str, allowed_providers: Optional[AbstractSet[str]] = None) -> List[Match]:
    """
    Extract provider secrets from one line of text.

    Args:
        line: A single line (diff lines may keep their leading '+')
        allowed_providers: When given, only these providers are reported

    Returns:
        Matches deduplicated by (provider, value); a value is never
        reported under two providers.
    """
    matches: List[Match] = []
    seen_values = set()

    for rule in CONTEXT_RULES:
        if allowed_providers is not None and rule.provider not in allowed_providers:
            continue
        if not rule.keywords.search(line):
            continue

        for found in rule.pattern.finditer(line):
            value = _value_of(found)
            if len(value) < rule.min_length:
                continue
            if value in seen_values:
                continue
            if is_false_positive(line, value):
                continue
            seen_values.add(value)
            matches.append(Match(rule.provider, value))

    for rule in PROVIDER_RULES:
        if allowed_providers is not None and rule.provider not in allowed_providers:
            continue

        for found in rule.pattern.finditer(line):
            value = _value_of(found)
            if len(value) < rule.min_length:
                continue
            # Already claimed by a context rule or an earlier prefix rule
            if value in seen_values:
                continue
            if is_false_positive(line, value):
                continue
            seen_values.add(value)
            matches.append(Match(rule.provider, value))

    return matches


def scan_lines(lines: Iterable[str], allowed_providers: Optional[AbstractSet[str]] = None) -> List[Match]:
    """Scan many lines of one file, reporting each (provider, value) once."""
    seen = set()
    results = []
    for line in lines:
        for match in scan_line(line, allowed_providers):
            if match in seen:
                continue
            seen.add(match)
            results.append(match)
    return results


def added_lines(patch: str) -> Iterator[str]:
    """Lines a unified diff adds, without their '+' marker.

    The '+++' file header is skipped.
    """
    for line in patch.split("\n"):
        if line.startswith("+") and not line.startswith("+++"):
            yield line[1:]


# ===================================================================
# REDACTION & FINGERPRINTS
# ===================================================================

REDACTED_SHORT = "***"


def redact(secret: str) -> str:
    """Show the first 4 and last 3 characters; fully mask short secrets."""
    if len(secret) <= 6:
        return REDACTED_SHORT
    return f"{secret[:4]}***{secret[-3:]}"


def fingerprint(secret: str, salt: str) -> str:
    """
    Salted SHA256 of the raw secret, used as the global dedup key.

    Only the secret contributes: the same key pasted in two repositories,
    or classified under two providers, yields one fingerprint.
    """
    return hashlib.sha256(f"{salt}:{secret}".encode('utf-8')).hexdigest()


# ===================================================================
# FILE FILTERING
# ===================================================================

# Binary, lock and minified assets are never fetched in full
BINARY_FILE_EXTENSIONS = (
    ".png", ".jpg", ".jpeg", ".gif", ".bmp", ".ico", ".svg",
    ".pdf", ".zip", ".gz", ".tar", ".rar", ".7z",
    ".lock", ".exe", ".dll", ".so", ".dylib",
    ".woff", ".woff2", ".ttf", ".eot",
    ".mp3", ".mp4", ".avi", ".mov",
    ".class", ".jar", ".pyc", ".pyo",
    ".min.js", ".min.css",
    ".map",
)


def is_likely_text_file(file_path: str) -> bool:
    return not file_path.lower().endswith(BINARY_FILE_EXTENSIONS)
