#!/usr/bin/env python3
"""
===================================================================
REPOSITORY SECRET GUARD - GITHUB APP
===================================================================

PURPOSE:
    Watches pushes, issues, pull requests and their comments for
    accidentally committed sensitive data (credential-shaped strings and
    dangerous files such as private keys) and remediates findings by
    opening a tracking issue, commenting on the offending thread, or
    failing a check run on the pull request.

FEATURES:
    ✓ Path patterns for dangerous files (.pem, id_rsa, .env, keystores, ...)
    ✓ Line-oriented content patterns for secrets (AWS, GitHub, Slack, Stripe,
      Google, SendGrid, JWT, private key headers, database URIs, ...)
    ✓ Custom pattern files (JSON) validated at startup
    ✓ Per-scan content cache with coalesced concurrent fetches
    ✓ Resolution tracking across the commits of a pull request
    ✓ Check runs with success / failure / skipped verdicts
    ✓ Tracking issues for pushes outside of pull requests
    ✓ Warning comments for issues, pull requests, reviews and comments
    ✓ Webhook signature verification (X-Hub-Signature-256)
    ✓ Rate limiting & exponential backoff for the GitHub API
    ✓ Structured JSON logging for observability

REQUIREMENTS:
    pip install -e .
    or
    pip install aiohttp aiofiles PyGithub tqdm

USAGE:
    # Run the webhook receiver (GitHub App credentials)
    export GITHUB_APP_ID="123456"
    export GITHUB_APP_PRIVATE_KEY_FILE="/etc/secret-guard/app.pem"
    export WEBHOOK_SECRET="..."
    python repo_secret_guard.py serve --port 8080

    # Dry-run the pull request check from a terminal
    export GITHUB_TOKEN="ghp_your_token_here"
    python repo_secret_guard.py scan-pull octo-org/octo-repo 42

    # Validate a custom pattern file
    python repo_secret_guard.py validate-patterns patterns.json

CONFIGURATION:
    Set via environment variables:
    - GITHUB_APP_ID / GITHUB_APP_PRIVATE_KEY_FILE: GitHub App credentials
    - GITHUB_TOKEN: token used when no App credentials are configured
    - GITHUB_API_URL: REST API base (default: https://api.github.com)
    - GITHUB_HTML_URL: web base used for locator links (default: https://github.com)
    - WEBHOOK_SECRET: shared secret for webhook signatures
    - PATTERNS_FILE: path to a JSON pattern file
    - EXTEND_DEFAULT_PATTERNS: append file patterns to the defaults (default: true)
    - CHECK_RUN_NAME: name of the check run (default: Secret Guard Checks)
    - MAX_CONCURRENT_FETCHES: parallel content fetches per scan (default: 10)
    - MAX_FILE_SIZE_MB: skip content matching above this size (default: 10)
    - SCAN_TIMEOUT_SECONDS: deadline for one scan (default: 300)
    - LOG_FORMAT: text|json (default: text)
    - HOST / PORT: webhook listener address (default: 0.0.0.0:8080)

===================================================================
"""
import argparse
import asyncio
import base64
import hashlib
import hmac
import json
import logging
import os
import re
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Dict, Any, Optional, Tuple, FrozenSet, Callable, Awaitable, Union

# Third-party imports with error handling
try:
    from github import Github, Auth, GithubException, RateLimitExceededException
    from aiohttp import web
    from tqdm import tqdm
    import aiofiles
except ImportError as e:
    print(f"ERROR: Missing required dependency: {e}")
    print("Install with: pip install aiohttp aiofiles PyGithub tqdm")
    sys.exit(1)

__version__ = "1.0.0"

# ===================================================================
# CONFIGURATION & CONSTANTS
# ===================================================================

# Environment-driven configuration
GITHUB_TOKEN = os.environ.get("GITHUB_TOKEN")
GITHUB_APP_ID = os.environ.get("GITHUB_APP_ID", "")
GITHUB_APP_PRIVATE_KEY_FILE = os.environ.get("GITHUB_APP_PRIVATE_KEY_FILE", "")
GITHUB_API_URL = os.environ.get("GITHUB_API_URL", "https://api.github.com")
GITHUB_HTML_URL = os.environ.get("GITHUB_HTML_URL", "https://github.com").rstrip("/")
WEBHOOK_SECRET = os.environ.get("WEBHOOK_SECRET", "")
PATTERNS_FILE = os.environ.get("PATTERNS_FILE", "")
EXTEND_DEFAULT_PATTERNS = os.environ.get("EXTEND_DEFAULT_PATTERNS", "true").lower() == "true"
CHECK_RUN_NAME = os.environ.get("CHECK_RUN_NAME", "Secret Guard Checks")
MAX_CONCURRENT_FETCHES = int(os.environ.get("MAX_CONCURRENT_FETCHES", "10"))
MAX_FILE_SIZE_MB = int(os.environ.get("MAX_FILE_SIZE_MB", "10"))
SCAN_TIMEOUT_SECONDS = float(os.environ.get("SCAN_TIMEOUT_SECONDS", "300"))
LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")  # text|json
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8080"))

# GitHub API rate limiting
GITHUB_API_RATE_LIMIT = int(os.environ.get("GITHUB_API_RATE_LIMIT", "5000"))  # requests per hour
GITHUB_API_BACKOFF_BASE = float(os.environ.get("GITHUB_API_BACKOFF_BASE", "2.0"))
GITHUB_API_MAX_RETRIES = int(os.environ.get("GITHUB_API_MAX_RETRIES", "5"))

# Operational constants
MAX_FILE_SIZE_BYTES = MAX_FILE_SIZE_MB * 1024 * 1024

# Binary file extensions never fetched for content matching
BINARY_FILE_EXTENSIONS = {
    # Images
    '.png', '.jpg', '.jpeg', '.gif', '.bmp', '.ico', '.webp', '.tiff', '.psd',
    # Video & audio
    '.mp4', '.avi', '.mov', '.mkv', '.webm', '.mp3', '.wav', '.flac', '.ogg',
    # Archives
    '.zip', '.tar', '.gz', '.bz2', '.7z', '.rar', '.xz', '.tgz',
    # Executables & libraries
    '.exe', '.dll', '.so', '.dylib', '.bin', '.deb', '.rpm',
    # Compiled
    '.pyc', '.pyo', '.class', '.o', '.a', '.obj', '.lib', '.jar', '.war',
    # Documents
    '.pdf', '.doc', '.docx', '.xls', '.xlsx', '.ppt', '.pptx',
    # Fonts
    '.ttf', '.otf', '.woff', '.woff2', '.eot',
    # Other
    '.iso', '.dmg', '.img', '.pickle', '.pkl', '.parquet', '.sqlite', '.db',
}

# Binary detection
BINARY_SAMPLE_SIZE = 8192         # Bytes to inspect for binary detection (8KB)
BINARY_NON_TEXT_THRESHOLD = 0.30  # 30% non-text bytes threshold

NO_PULL_REQUESTS_SUMMARY = (
    "No Pull Requests found. Secret Guard checks are currently only supported from Pull Requests"
)

# Tokens wrapped in single backticks inside issue/comment bodies
INLINE_CODE_TOKEN = re.compile(r'`([^`\s]+)`')


# ===================================================================
# LOGGING SETUP
# ===================================================================

class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    EXTRA_FIELDS = ("repo", "event", "delivery", "check_run_id", "finding_count")

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for name in self.EXTRA_FIELDS:
            if hasattr(record, name):
                log_data[name] = getattr(record, name)

        return json.dumps(log_data)


def setup_logging(log_format: str = "text") -> logging.Logger:
    """Setup logging with either text or JSON format."""
    logger = logging.getLogger(__name__)
    logger.setLevel(logging.INFO)

    # Remove existing handlers
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)

    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))

    logger.addHandler(handler)
    return logger


logger = setup_logging(LOG_FORMAT)


# ===================================================================
# ERRORS
# ===================================================================

class GuardError(Exception):
    """Base class for all errors raised by the guard."""


class ConfigurationError(GuardError):
    """Malformed configuration or pattern source. Fatal at startup."""


class FetchError(GuardError):
    """Content or metadata could not be retrieved from GitHub."""


class NotFoundError(FetchError):
    """The requested path or object does not exist at that commit."""


class ScanTimeoutError(FetchError):
    """A scan did not finish before its deadline."""


class RemediationError(GuardError):
    """An issue, comment or check run could not be written."""


class CheckRunStateError(GuardError):
    """Illegal check run state transition."""


# ===================================================================
# DATA MODEL
# ===================================================================

class FileState(Enum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"

    @classmethod
    def from_platform_status(cls, status: str) -> "FileState":
        """Map a GitHub file status (added, removed, renamed, ...) to a FileState."""
        if status == "added":
            return cls.ADDED
        if status == "removed":
            return cls.REMOVED
        # modified, changed, renamed, copied and unchanged all leave a blob at the commit
        return cls.MODIFIED


class PatternKind(Enum):
    PATH = "path"
    CONTENT = "content"


@dataclass(frozen=True)
class Pattern:
    """A compiled detection rule. Immutable once loaded."""
    name: str
    kind: PatternKind
    source: str
    regex: "re.Pattern" = field(compare=False, repr=False)

    @property
    def pattern_id(self) -> str:
        return self.name


@dataclass(frozen=True)
class FileQuery:
    """One file state to inspect: a path at a commit, with its change status."""
    owner: str
    repo: str
    commit_sha: str
    path: str
    status: FileState

    @property
    def key(self) -> Tuple[str, str, str, str]:
        return (self.owner, self.repo, self.commit_sha, self.path)


@dataclass(frozen=True)
class FileChange:
    path: str
    status: str
    previous_path: Optional[str] = None


@dataclass(frozen=True)
class LineMatch:
    line_number: int
    pattern: Pattern


@dataclass
class FileMatch:
    path: str
    url: str
    patterns: List[Pattern]
    query: Optional[FileQuery] = None


@dataclass
class ContentMatch:
    path: str
    url: str
    line_matches: List[LineMatch]
    query: Optional[FileQuery] = None


@dataclass
class Match:
    """
    One occurrence of a file or content match.

    The resolved flag only moves from False to True; ResolutionTracker sets it
    once the offense is proven absent at the head of the scanned range.
    """
    path: str
    pattern: Pattern
    url: str
    line_number: Optional[int] = None
    commit_sha: Optional[str] = None
    _resolved: bool = field(default=False, init=False, repr=False)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.path, self.pattern.pattern_id)

    @property
    def resolved(self) -> bool:
        return self._resolved

    def mark_resolved(self) -> None:
        self._resolved = True


@dataclass
class ScanResult:
    """
    Matches found in one unit of work (a commit, an issue body, a comment...).

    The lists are append-only while the scanner builds the result and become
    read-only tuples once sealed.
    """
    identifier: str
    file_matches: List[FileMatch] = field(default_factory=list)
    content_matches: List[ContentMatch] = field(default_factory=list)
    matches: List[Match] = field(default_factory=list)
    _sealed: bool = field(default=False, init=False, repr=False)

    def _ensure_open(self) -> None:
        if self._sealed:
            raise RuntimeError(f"Scan result for {self.identifier} is sealed")

    def add_file_match(self, file_match: FileMatch) -> None:
        self._ensure_open()
        self.file_matches.append(file_match)
        commit_sha = file_match.query.commit_sha if file_match.query else None
        for pattern in file_match.patterns:
            self.matches.append(Match(
                path=file_match.path,
                pattern=pattern,
                url=file_match.url,
                commit_sha=commit_sha
            ))

    def add_content_match(self, content_match: ContentMatch) -> None:
        self._ensure_open()
        self.content_matches.append(content_match)
        commit_sha = content_match.query.commit_sha if content_match.query else None
        for line_match in content_match.line_matches:
            self.matches.append(Match(
                path=content_match.path,
                pattern=line_match.pattern,
                url=f"{content_match.url}#L{line_match.line_number}",
                line_number=line_match.line_number,
                commit_sha=commit_sha
            ))

    def seal(self) -> "ScanResult":
        self.file_matches = tuple(self.file_matches)
        self.content_matches = tuple(self.content_matches)
        self.matches = tuple(self.matches)
        self._sealed = True
        return self

    def has_matches(self) -> bool:
        return bool(self.file_matches or self.content_matches or self.matches)


class CheckRunStatus(Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class CheckRunConclusion(Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


@dataclass
class CheckRun:
    id: int
    head_sha: str
    owner: str
    repo: str
    html_url: str = ""
    status: CheckRunStatus = CheckRunStatus.IN_PROGRESS
    conclusion: Optional[CheckRunConclusion] = None


@dataclass(frozen=True)
class IssueRef:
    number: int
    html_url: str = ""


@dataclass(frozen=True)
class CheckRunRef:
    id: int
    html_url: str = ""


def blob_url(owner: str, repo: str, commit_sha: str, path: str, html_url: str = GITHUB_HTML_URL) -> str:
    """Locator link for a file at a commit."""
    return f"{html_url}/{owner}/{repo}/blob/{commit_sha}/{path}"


# ===================================================================
# DETECTION PATTERNS
# ===================================================================

# Built-in rule set. Content patterns are evaluated one line at a time, so
# multi-line secrets are detected by their header line.
DEFAULT_PATTERN_DEFINITIONS = [
    # Dangerous files
    {"kind": "path", "name": "PRIVATE_KEY_FILE", "pattern": r'\.(?:pem|key)$'},
    {"kind": "path", "name": "SSH_PRIVATE_KEY_FILE", "pattern": r'(?:^|/)id_(?:rsa|dsa|ecdsa|ed25519)$'},
    {"kind": "path", "name": "PKCS12_FILE", "pattern": r'\.(?:p12|pfx)$'},
    {"kind": "path", "name": "KEYSTORE_FILE", "pattern": r'\.(?:jks|keystore)$'},
    {"kind": "path", "name": "ENV_FILE", "pattern": r'(?:^|/)\.env(?:\.(?!example$|sample$|template$)[\w.-]+)?$'},
    {"kind": "path", "name": "HTPASSWD_FILE", "pattern": r'(?:^|/)\.htpasswd$'},
    {"kind": "path", "name": "NETRC_FILE", "pattern": r'(?:^|/)\.netrc$'},
    {"kind": "path", "name": "CREDENTIALS_FILE", "pattern": r'(?:^|/)credentials(?:\.json)?$'},
    {"kind": "path", "name": "TERRAFORM_STATE_FILE", "pattern": r'\.tfstate(?:\.backup)?$'},

    # Cryptographic keys
    {"kind": "content", "name": "PRIVATE_KEY",
     "pattern": r'-----BEGIN (?:RSA |EC |DSA |OPENSSH |ENCRYPTED |PGP )?PRIVATE KEY(?: BLOCK)?-----'},

    # Cloud providers
    {"kind": "content", "name": "AWS_ACCESS_KEY_ID", "pattern": r'\b(?:AKIA|ASIA|AGPA|AIDA)[A-Z0-9]{16}\b'},
    {"kind": "content", "name": "GOOGLE_API_KEY", "pattern": r'\bAIza[0-9A-Za-z_-]{35}\b'},

    # Version control & messaging
    {"kind": "content", "name": "GITHUB_TOKEN", "pattern": r'\b(?:ghp|gho|ghu|ghs|ghr)_[A-Za-z0-9]{36}\b'},
    {"kind": "content", "name": "SLACK_TOKEN",
     "pattern": r'\bxox[pbar]-[0-9]{10,13}-[0-9]{10,13}-[A-Za-z0-9]{24,32}\b'},

    # Payment & email
    {"kind": "content", "name": "STRIPE_KEY", "pattern": r'\b(?:sk|rk)_live_[A-Za-z0-9]{24,}\b'},
    {"kind": "content", "name": "SENDGRID_KEY", "pattern": r'\bSG\.[A-Za-z0-9_-]{22}\.[A-Za-z0-9_-]{43}\b'},

    # Tokens & connection strings
    {"kind": "content", "name": "JWT_TOKEN",
     "pattern": r'\beyJ[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}\b'},
    {"kind": "content", "name": "DATABASE_URI",
     "pattern": r'(?:postgres(?:ql)?|mysql|mariadb|mongodb(?:\+srv)?|redis)://[^:\s/@]+:[^@\s]+@[\w.-]+'},

    # Generic assignments (should be last for specificity)
    {"kind": "content", "name": "ASSIGNMENT_SECRET",
     "pattern": r'(?i)\b(?:password|passwd|pwd|secret|token|api[_-]?key|apikey|access[_-]?key|secret[_-]?key'
                r'|access[_-]?token|auth[_-]?token|client[_-]?secret)\b["\']?\s*[:=]\s*["\']?[A-Za-z0-9\-._/+=]{8,200}'},
]


def _pattern_entries(source: Any) -> List[Any]:
    """Accept a bare list or the {"patterns": [...]} wrapper."""
    if isinstance(source, dict):
        source = source.get("patterns")
    if not isinstance(source, list):
        raise ConfigurationError("Pattern source must be a list of {kind, pattern} entries")
    return source


class PatternStore:
    """Read-only set of path and content rules shared by every scan."""

    def __init__(self, path_patterns: List[Pattern], content_patterns: List[Pattern]):
        self._path_patterns = tuple(path_patterns)
        self._content_patterns = tuple(content_patterns)

    @property
    def path_patterns(self) -> Tuple[Pattern, ...]:
        return self._path_patterns

    @property
    def content_patterns(self) -> Tuple[Pattern, ...]:
        return self._content_patterns

    def __len__(self) -> int:
        return len(self._path_patterns) + len(self._content_patterns)

    @classmethod
    def load(cls, definitions: Any) -> "PatternStore":
        """
        Compile pattern definitions.

        Args:
            definitions: list of {"kind": "path"|"content", "pattern": str, "name": str}

        Raises:
            ConfigurationError: on any malformed entry or invalid regular expression
        """
        path_patterns = []
        content_patterns = []
        seen_names = set()

        for index, entry in enumerate(_pattern_entries(definitions)):
            if not isinstance(entry, dict):
                raise ConfigurationError(f"Pattern #{index} is not an object")

            kind_value = entry.get("kind")
            try:
                kind = PatternKind(kind_value)
            except ValueError:
                raise ConfigurationError(f"Pattern #{index} has unknown kind {kind_value!r}") from None

            source = entry.get("pattern")
            if not isinstance(source, str) or not source:
                raise ConfigurationError(f"Pattern #{index} has no pattern string")

            name = entry.get("name") or f"{kind.name}_{index}"
            if name in seen_names:
                raise ConfigurationError(f"Duplicate pattern name: {name}")
            seen_names.add(name)

            try:
                regex = re.compile(source)
            except re.error as e:
                raise ConfigurationError(f"Invalid regex for pattern {name}: {e}") from e

            pattern = Pattern(name=name, kind=kind, source=source, regex=regex)
            if kind is PatternKind.PATH:
                path_patterns.append(pattern)
            else:
                content_patterns.append(pattern)

        return cls(path_patterns, content_patterns)

    @classmethod
    def default(cls) -> "PatternStore":
        return cls.load(DEFAULT_PATTERN_DEFINITIONS)

    def match_path(self, path: str) -> List[Pattern]:
        """Path patterns matching a file path. Case-sensitive."""
        return [pattern for pattern in self._path_patterns if pattern.regex.search(path)]

    def match_content(self, text: str) -> List[LineMatch]:
        """
        Evaluate every content pattern against every line.

        Entries come out in line order; a line hit by two patterns yields two
        entries.
        """
        line_matches = []
        for line_number, line in enumerate(text.splitlines(), start=1):
            for pattern in self._content_patterns:
                if pattern.regex.search(line):
                    line_matches.append(LineMatch(line_number, pattern))
        return line_matches


async def load_pattern_file_async(filepath: str, extend_defaults: bool = False) -> PatternStore:
    """
    Load a pattern file.

    Expected format:
    [
      {"kind": "path", "name": "VAULT_FILE", "pattern": "\\\\.vault$"},
      {"kind": "content", "name": "MY_API_KEY", "pattern": "myapi_[A-Za-z0-9]{32}"}
    ]

    The {"patterns": [...]} wrapper is accepted as well.
    """
    try:
        async with aiofiles.open(filepath, 'r', encoding='utf-8') as f:
            raw = await f.read()
    except FileNotFoundError as e:
        raise ConfigurationError(f"Pattern file not found: {filepath}") from e
    except OSError as e:
        raise ConfigurationError(f"Cannot read pattern file {filepath}: {e}") from e

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in pattern file {filepath}: {e}") from e

    entries = _pattern_entries(data)
    if extend_defaults:
        entries = list(DEFAULT_PATTERN_DEFINITIONS) + entries

    store = PatternStore.load(entries)
    logger.info(f"Loaded {len(store)} patterns from {filepath}")
    return store


async def load_patterns(filepath: str = "", extend_defaults: bool = True) -> PatternStore:
    if filepath:
        return await load_pattern_file_async(filepath, extend_defaults)
    return PatternStore.default()


# ===================================================================
# UTILITY FUNCTIONS
# ===================================================================

_TEXT_BYTES = bytearray({7, 8, 9, 10, 12, 13, 27} | set(range(0x20, 0x100)) - {0x7f})


def is_binary_path(path: str) -> bool:
    """True when the extension marks a file we never fetch for content."""
    _, dot, extension = path.rpartition(".")
    return bool(dot) and f".{extension.lower()}" in BINARY_FILE_EXTENSIONS


def is_binary_content(data: bytes, sample_size: int = BINARY_SAMPLE_SIZE) -> bool:
    """
    Detect binary content by checking the first chunk.

    A null byte or more than 30% non-text bytes marks the blob as binary.
    """
    chunk = data[:sample_size]
    if not chunk:
        return False

    if b'\x00' in chunk:
        return True

    non_text_count = sum(1 for byte in chunk if byte not in _TEXT_BYTES)
    return (non_text_count / len(chunk)) > BINARY_NON_TEXT_THRESHOLD


def build_file_queries(owner: str, repo: str, commit_sha: str, files: List[FileChange]) -> List[FileQuery]:
    """
    Turn a commit's file changes into FileQueries.

    A rename also removes the previous path, which lets resolution tracking
    see a dangerous file renamed away.
    """
    queries = []
    for change in files:
        if change.previous_path and change.previous_path != change.path:
            queries.append(FileQuery(owner, repo, commit_sha, change.previous_path, FileState.REMOVED))
        queries.append(FileQuery(
            owner, repo, commit_sha, change.path, FileState.from_platform_status(change.status)
        ))
    return queries


# ===================================================================
# RATE LIMITING & BACKOFF
# ===================================================================

@dataclass
class RateLimitState:
    """Track rate limit state for GitHub API."""
    requests_remaining: int = GITHUB_API_RATE_LIMIT
    reset_time: datetime = field(default_factory=datetime.now)
    total_requests: int = 0
    total_waits: int = 0


class GitHubRateLimiter:
    """Rate limiter with exponential backoff for GitHub API."""

    def __init__(self, requests_per_hour: int = GITHUB_API_RATE_LIMIT):
        self.requests_per_hour = requests_per_hour
        self.min_interval = 3600.0 / requests_per_hour  # seconds between requests
        self.last_request_time = 0.0
        self.state = RateLimitState(requests_remaining=requests_per_hour)
        self.lock = asyncio.Lock()

    async def acquire(self):
        """Acquire permission to make a request with rate limiting."""
        async with self.lock:
            now = time.time()

            time_since_last = now - self.last_request_time
            if time_since_last < self.min_interval:
                wait_time = self.min_interval - time_since_last
                logger.debug(f"Rate limiting: waiting {wait_time:.2f}s")
                await asyncio.sleep(wait_time)
                self.state.total_waits += 1

            self.last_request_time = time.time()
            self.state.total_requests += 1
            self.state.requests_remaining -= 1

            # Reset counter every hour
            if datetime.now() >= self.state.reset_time:
                self.state.requests_remaining = self.requests_per_hour
                self.state.reset_time = datetime.now() + timedelta(hours=1)

    async def handle_rate_limit_error(self, reset_timestamp: Optional[int] = None):
        """Wait until the rate limit window resets."""
        if reset_timestamp:
            wait_until = datetime.fromtimestamp(reset_timestamp)
            wait_seconds = (wait_until - datetime.now()).total_seconds()
        else:
            wait_seconds = 60

        wait_seconds = max(wait_seconds, 1)
        logger.warning(f"Rate limit exceeded. Waiting {wait_seconds:.0f}s until reset")
        await asyncio.sleep(wait_seconds)

        self.state.requests_remaining = self.requests_per_hour
        self.state.reset_time = datetime.now() + timedelta(hours=1)

    def get_stats(self) -> Dict[str, Any]:
        """Get rate limiter statistics."""
        return {
            "total_requests": self.state.total_requests,
            "requests_remaining": self.state.requests_remaining,
            "total_waits": self.state.total_waits,
            "reset_time": self.state.reset_time.isoformat()
        }


def _rate_limit_reset(error: GithubException) -> Optional[int]:
    headers = getattr(error, "headers", None) or {}
    value = headers.get("x-ratelimit-reset") or headers.get("X-RateLimit-Reset")
    return int(value) if value else None


async def github_api_call_with_backoff(
    rate_limiter: GitHubRateLimiter,
    func,
    *args,
    max_retries: int = GITHUB_API_MAX_RETRIES,
    retry_transient: bool = True,
    **kwargs
):
    """
    Execute GitHub API call with exponential backoff on rate limit errors.

    Sync callables (PyGithub) run in a worker thread so that independent
    requests of one scan can overlap.

    Args:
        rate_limiter: Limiter owned by the calling client
        func: Function to call (can be sync or async)
        max_retries: Maximum number of retry attempts
        retry_transient: Retry non rate-limit failures (network errors, timeouts).
            Writes pass False so a request that may have landed is never repeated.

    Returns:
        Result of func call

    Raises:
        GuardError and non rate-limit GithubException immediately,
        anything else once all retries are exhausted
    """
    for attempt in range(max_retries):
        try:
            await rate_limiter.acquire()

            if asyncio.iscoroutinefunction(func):
                return await func(*args, **kwargs)
            return await asyncio.to_thread(func, *args, **kwargs)

        except GuardError:
            raise

        except RateLimitExceededException as e:
            if attempt == max_retries - 1:
                raise
            await rate_limiter.handle_rate_limit_error(_rate_limit_reset(e))

        except GithubException as e:
            if e.status == 403 and 'rate limit' in str(e).lower():
                if attempt == max_retries - 1:
                    raise

                wait_time = GITHUB_API_BACKOFF_BASE ** attempt
                logger.warning(f"GitHub API error (attempt {attempt + 1}/{max_retries}): {e}")
                logger.info(f"Backing off for {wait_time:.1f}s")
                await asyncio.sleep(wait_time)
            else:
                raise

        except Exception as e:
            if not retry_transient or attempt == max_retries - 1:
                raise

            wait_time = GITHUB_API_BACKOFF_BASE ** attempt
            logger.warning(f"API call failed (attempt {attempt + 1}/{max_retries}): {e}")
            await asyncio.sleep(wait_time)

    raise FetchError(f"Failed after {max_retries} attempts")


# ===================================================================
# GITHUB PLATFORM CLIENT
# ===================================================================

class GitHubPlatformClient:
    """
    Async facade over PyGithub for everything the guard reads and writes.

    Read failures surface as FetchError (NotFoundError for 404), write
    failures as RemediationError.
    """

    def __init__(
        self,
        github: Github,
        rate_limiter: Optional[GitHubRateLimiter] = None,
        max_retries: int = GITHUB_API_MAX_RETRIES
    ):
        self._github = github
        self.rate_limiter = rate_limiter or GitHubRateLimiter()
        self.max_retries = max_retries

    def _repository(self, owner: str, repo: str):
        return self._github.get_repo(f"{owner}/{repo}", lazy=True)

    async def _read(self, description: str, func):
        try:
            return await github_api_call_with_backoff(self.rate_limiter, func, max_retries=self.max_retries)
        except GuardError:
            raise
        except GithubException as e:
            if e.status == 404:
                raise NotFoundError(f"{description}: not found") from e
            raise FetchError(f"{description}: {e}") from e
        except Exception as e:
            raise FetchError(f"{description}: {e}") from e

    async def _write(self, description: str, func):
        try:
            return await github_api_call_with_backoff(
                self.rate_limiter, func, max_retries=self.max_retries, retry_transient=False
            )
        except GuardError:
            raise
        except Exception as e:
            raise RemediationError(f"{description}: {e}") from e

    async def fetch_file_content(self, owner: str, repo: str, commit_sha: str, path: str) -> bytes:
        def _fetch():
            repository = self._repository(owner, repo)
            contents = repository.get_contents(path, ref=commit_sha)
            if isinstance(contents, list):
                raise NotFoundError(f"{path} is a directory at {commit_sha}")
            # Files above 1MB come back without inline content
            if contents.encoding == "none":
                blob = repository.get_git_blob(contents.sha)
                return base64.b64decode(blob.content)
            return contents.decoded_content

        return await self._read(f"Fetching {owner}/{repo}@{commit_sha}:{path}", _fetch)

    async def list_pull_request_commits(self, owner: str, repo: str, number: int) -> List[str]:
        def _list():
            pull = self._repository(owner, repo).get_pull(number)
            return [commit.sha for commit in pull.get_commits()]

        return await self._read(f"Listing commits of {owner}/{repo}#{number}", _list)

    async def get_commit_files(self, owner: str, repo: str, commit_sha: str) -> List[FileChange]:
        def _files():
            commit = self._repository(owner, repo).get_commit(commit_sha)
            return [
                FileChange(path=f.filename, status=f.status, previous_path=f.previous_filename)
                for f in commit.files
            ]

        return await self._read(f"Listing files of {owner}/{repo}@{commit_sha}", _files)

    async def list_open_pull_requests(self, owner: str, repo: str, head: str) -> List[int]:
        def _list():
            pulls = self._repository(owner, repo).get_pulls(state="open", head=head)
            return [pull.number for pull in pulls]

        return await self._read(f"Listing open pull requests of {owner}/{repo} for {head}", _list)

    async def create_issue(
        self, owner: str, repo: str, title: str, body: str, assignee: Optional[str] = None
    ) -> IssueRef:
        def _create():
            kwargs = {"title": title, "body": body}
            if assignee:
                kwargs["assignee"] = assignee
            issue = self._repository(owner, repo).create_issue(**kwargs)
            return IssueRef(number=issue.number, html_url=issue.html_url)

        return await self._write(f"Creating issue in {owner}/{repo}", _create)

    async def create_issue_comment(self, owner: str, repo: str, number: int, body: str) -> None:
        def _comment():
            self._repository(owner, repo).get_issue(number).create_comment(body)

        await self._write(f"Commenting on {owner}/{repo}#{number}", _comment)

    async def create_check_run(self, owner: str, repo: str, name: str, head_sha: str) -> CheckRunRef:
        def _create():
            check_run = self._repository(owner, repo).create_check_run(
                name=name,
                head_sha=head_sha,
                status=CheckRunStatus.IN_PROGRESS.value
            )
            return CheckRunRef(id=check_run.id, html_url=check_run.html_url)

        return await self._write(f"Creating check run on {owner}/{repo}@{head_sha}", _create)

    async def update_check_run(
        self,
        owner: str,
        repo: str,
        check_run_id: int,
        status: str,
        conclusion: Optional[str],
        title: str,
        summary: str,
        text: Optional[str] = None
    ) -> None:
        def _update():
            output = {"title": title, "summary": summary}
            if text:
                output["text"] = text
            kwargs = {"status": status, "output": output}
            if conclusion:
                kwargs["conclusion"] = conclusion
            self._repository(owner, repo).get_check_run(check_run_id).edit(**kwargs)

        await self._write(f"Updating check run {check_run_id} in {owner}/{repo}", _update)

    def close(self) -> None:
        self._github.close()


class GitHubClientFactory:
    """Builds one platform client per event, authenticated for its installation."""

    def __init__(
        self,
        app_id: Optional[str] = None,
        private_key: Optional[str] = None,
        token: Optional[str] = None,
        base_url: str = GITHUB_API_URL,
        requests_per_hour: int = GITHUB_API_RATE_LIMIT
    ):
        if not token and not (app_id and private_key):
            raise ConfigurationError(
                "Either GITHUB_TOKEN or GITHUB_APP_ID with GITHUB_APP_PRIVATE_KEY_FILE is required"
            )
        self.app_id = app_id
        self.private_key = private_key
        self.token = token
        self.base_url = base_url
        self.requests_per_hour = requests_per_hour
        # Rate limits are per installation
        self._limiters: Dict[Optional[int], GitHubRateLimiter] = {}

    def __call__(self, installation_id: Optional[int] = None) -> GitHubPlatformClient:
        if self.app_id and self.private_key and installation_id is not None:
            auth = Auth.AppAuth(int(self.app_id), self.private_key).get_installation_auth(installation_id)
        elif self.token:
            auth = Auth.Token(self.token)
        else:
            raise ConfigurationError(f"No credentials available for installation {installation_id}")

        limiter = self._limiters.get(installation_id)
        if limiter is None:
            limiter = self._limiters[installation_id] = GitHubRateLimiter(self.requests_per_hour)

        return GitHubPlatformClient(Github(auth=auth, base_url=self.base_url), limiter)


# ===================================================================
# CONTENT CACHE
# ===================================================================

class ContentCache:
    """
    Blob cache for one scanning session.

    Identical (owner, repo, commit, path) keys share a single in-flight fetch;
    distinct keys run in parallel up to max_concurrent. Removed files resolve
    to None without a fetch.
    """

    def __init__(
        self,
        fetcher: Callable[[str, str, str, str], Awaitable[bytes]],
        max_concurrent: int = MAX_CONCURRENT_FETCHES
    ):
        self._fetcher = fetcher
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._entries: Dict[Tuple[str, str, str, str], asyncio.Future] = {}
        self.fetch_count = 0

    async def get(self, query: FileQuery) -> Optional[bytes]:
        if query.status is FileState.REMOVED:
            return None

        entry = self._entries.get(query.key)
        if entry is None:
            entry = asyncio.ensure_future(self._fetch(query))
            self._entries[query.key] = entry
        else:
            logger.debug(f"Content cache hit: {query.path}@{query.commit_sha[:7]}")

        # A cancelled waiter must not cancel the fetch other waiters share
        return await asyncio.shield(entry)

    async def _fetch(self, query: FileQuery) -> bytes:
        async with self._semaphore:
            self.fetch_count += 1
            return await self._fetcher(query.owner, query.repo, query.commit_sha, query.path)

    def __len__(self) -> int:
        return len(self._entries)

    def close(self) -> None:
        """Cancel fetches still in flight and drop every entry."""
        for entry in self._entries.values():
            if not entry.done():
                entry.cancel()
        self._entries.clear()


# ===================================================================
# RESOLUTION TRACKING
# ===================================================================

class ResolutionTracker:
    """
    Decides which matches are gone by the end of a commit range.

    Offenses are identified by (path, pattern_id). Observations must be fed in
    commit order; the last observation of a path is its head state.
    """

    def __init__(self):
        # path -> (pattern ids present at head, content scanned), None once the path is removed
        self._head: Dict[str, Optional[Tuple[FrozenSet[str], bool]]] = {}

    def observe(self, path: str, status: FileState, pattern_ids, content_scanned: bool = True) -> None:
        """
        Record the state of a path at the next commit.

        An observation whose content was skipped (binary or oversize blob)
        proves nothing about content patterns, so they stay present.
        """
        if status is FileState.REMOVED:
            self._head[path] = None
        else:
            self._head[path] = (frozenset(pattern_ids), content_scanned)

    def is_present_at_head(self, key: Tuple[str, str]) -> bool:
        path, pattern_id = key
        if path not in self._head:
            # Never observed, so absence cannot be proven
            return True
        head = self._head[path]
        if head is None:
            return False
        pattern_ids, content_scanned = head
        # Path patterns are re-evaluated on every observation of the same path
        return pattern_id in pattern_ids or not content_scanned

    def apply(self, results: List[ScanResult]) -> int:
        """Mark every match absent at head as resolved. Returns how many were marked."""
        marked = 0
        for result in results:
            for match in result.matches:
                if not match.resolved and not self.is_present_at_head(match.key):
                    match.mark_resolved()
                    marked += 1
        return marked


def all_matches_are_resolved(results: List[ScanResult]) -> bool:
    """True when every match of every result is resolved (vacuously true for none)."""
    return all(match.resolved for result in results for match in result.matches)


# ===================================================================
# WEBHOOK EVENTS
# ===================================================================

@dataclass
class PushCommit:
    sha: str
    url: str = ""
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)


@dataclass
class PushEvent:
    installation_id: Optional[int]
    owner: str
    repo: str
    ref: str
    pusher: str
    commits: List[PushCommit]
    deleted: bool = False

    @property
    def branch(self) -> Optional[str]:
        prefix = "refs/heads/"
        return self.ref[len(prefix):] if self.ref.startswith(prefix) else None


@dataclass
class IssueEvent:
    installation_id: Optional[int]
    owner: str
    repo: str
    action: str
    number: int
    body: Optional[str]
    author: Optional[str]
    html_url: str


@dataclass
class IssueCommentEvent:
    installation_id: Optional[int]
    owner: str
    repo: str
    action: str
    number: int
    comment_id: int
    body: Optional[str]
    author: Optional[str]
    html_url: str


@dataclass
class PullRequestEvent:
    installation_id: Optional[int]
    owner: str
    repo: str
    action: str
    number: int
    body: Optional[str]
    author: Optional[str]
    html_url: str


@dataclass
class PullRequestReviewEvent:
    installation_id: Optional[int]
    owner: str
    repo: str
    action: str
    number: int
    review_id: int
    body: Optional[str]
    author: Optional[str]
    html_url: str


@dataclass
class PullRequestReviewCommentEvent:
    installation_id: Optional[int]
    owner: str
    repo: str
    action: str
    number: int
    comment_id: int
    body: Optional[str]
    author: Optional[str]
    html_url: str


@dataclass
class CheckSuiteEvent:
    installation_id: Optional[int]
    owner: str
    repo: str
    action: str
    check_suite_id: int
    head_sha: str
    pull_request_numbers: List[int] = field(default_factory=list)


@dataclass
class InstallationEvent:
    installation_id: Optional[int]
    action: str
    sender: str


Event = Union[
    PushEvent, IssueEvent, IssueCommentEvent, PullRequestEvent, PullRequestReviewEvent,
    PullRequestReviewCommentEvent, CheckSuiteEvent, InstallationEvent
]

# Actions worth scanning per event type
SCANNED_ACTIONS = {
    "issues": {"opened", "edited", "reopened"},
    "issue_comment": {"created", "edited"},
    "pull_request": {"opened", "edited", "reopened"},
    "pull_request_review": {"submitted", "edited"},
    "pull_request_review_comment": {"created", "edited"},
    "check_suite": {"requested", "rerequested"},
}


def _login(user: Optional[Dict[str, Any]]) -> Optional[str]:
    return user.get("login") if user else None


def parse_event(event_name: str, payload: Dict[str, Any]) -> Optional[Event]:
    """
    Parse a webhook payload into its typed event.

    Returns None for event types and actions the guard does not act on, and
    for body events authored by bots (our own comments included).

    Raises:
        KeyError, TypeError, ValueError: malformed payload
    """
    installation_id = (payload.get("installation") or {}).get("id")

    if event_name == "installation":
        return InstallationEvent(installation_id, payload.get("action", ""), _login(payload.get("sender")) or "")

    if event_name not in SCANNED_ACTIONS and event_name != "push":
        return None

    repository = payload["repository"]
    owner = repository["owner"].get("login") or repository["owner"]["name"]
    repo = repository["name"]

    if event_name == "push":
        commits = [
            PushCommit(
                sha=commit["id"],
                url=commit.get("url", ""),
                added=list(commit.get("added", [])),
                removed=list(commit.get("removed", [])),
                modified=list(commit.get("modified", []))
            )
            for commit in payload.get("commits", [])
        ]
        return PushEvent(
            installation_id, owner, repo,
            ref=payload["ref"],
            pusher=payload["pusher"]["name"],
            commits=commits,
            deleted=bool(payload.get("deleted", False))
        )

    action = payload.get("action", "")
    if action not in SCANNED_ACTIONS[event_name]:
        return None

    if event_name == "check_suite":
        suite = payload["check_suite"]
        return CheckSuiteEvent(
            installation_id, owner, repo, action,
            check_suite_id=int(suite["id"]),
            head_sha=suite["head_sha"],
            pull_request_numbers=[int(pr["number"]) for pr in suite.get("pull_requests", [])]
        )

    if (payload.get("sender") or {}).get("type") == "Bot":
        return None

    if event_name == "issues":
        issue = payload["issue"]
        return IssueEvent(
            installation_id, owner, repo, action, int(issue["number"]),
            issue.get("body"), _login(issue.get("user")), issue.get("html_url", "")
        )

    if event_name == "issue_comment":
        comment = payload["comment"]
        return IssueCommentEvent(
            installation_id, owner, repo, action, int(payload["issue"]["number"]), int(comment["id"]),
            comment.get("body"), _login(comment.get("user")), comment.get("html_url", "")
        )

    if event_name == "pull_request":
        pull = payload["pull_request"]
        return PullRequestEvent(
            installation_id, owner, repo, action, int(pull["number"]),
            pull.get("body"), _login(pull.get("user")), pull.get("html_url", "")
        )

    if event_name == "pull_request_review":
        review = payload["review"]
        return PullRequestReviewEvent(
            installation_id, owner, repo, action, int(payload["pull_request"]["number"]), int(review["id"]),
            review.get("body"), _login(review.get("user")), review.get("html_url", "")
        )

    comment = payload["comment"]
    return PullRequestReviewCommentEvent(
        installation_id, owner, repo, action, int(payload["pull_request"]["number"]), int(comment["id"]),
        comment.get("body"), _login(comment.get("user")), comment.get("html_url", "")
    )


# ===================================================================
# SCANNER
# ===================================================================

@dataclass
class FileObservation:
    """What one FileQuery looked like: matching path patterns and content lines."""
    query: FileQuery
    path_patterns: List[Pattern]
    line_matches: List[LineMatch]
    content_scanned: bool = True

    @property
    def pattern_ids(self) -> FrozenSet[str]:
        ids = {pattern.pattern_id for pattern in self.path_patterns}
        ids.update(line_match.pattern.pattern_id for line_match in self.line_matches)
        return frozenset(ids)

    @property
    def has_matches(self) -> bool:
        return bool(self.path_patterns or self.line_matches)


class Scanner:
    """Evaluates pushes, pull requests and text bodies against a PatternStore."""

    def __init__(
        self,
        pattern_store: PatternStore,
        client,
        html_url: str = GITHUB_HTML_URL,
        max_concurrent_fetches: int = MAX_CONCURRENT_FETCHES,
        max_file_size: int = MAX_FILE_SIZE_BYTES,
        timeout: float = SCAN_TIMEOUT_SECONDS
    ):
        self.patterns = pattern_store
        self.client = client
        self.html_url = html_url
        self.max_concurrent_fetches = max_concurrent_fetches
        self.max_file_size = max_file_size
        self.timeout = timeout

    # --- multi-commit triggers ---

    async def check_push(self, event: PushEvent) -> List[ScanResult]:
        """Scan every file touched by a push, commits oldest first."""
        queries = []
        for commit in event.commits:
            for path in commit.added:
                queries.append(FileQuery(event.owner, event.repo, commit.sha, path, FileState.ADDED))
            for path in commit.modified:
                queries.append(FileQuery(event.owner, event.repo, commit.sha, path, FileState.MODIFIED))
            for path in commit.removed:
                queries.append(FileQuery(event.owner, event.repo, commit.sha, path, FileState.REMOVED))

        logger.info(f"Scanning {len(queries)} file changes across {len(event.commits)} commits")
        return await self.check_file_content_from_queries(queries)

    async def check_pull_request_commits(
        self, owner: str, repo: str, number: int, progress: bool = False
    ) -> List[ScanResult]:
        """
        List a pull request's commits and files, then scan them.

        Listing and scanning share one deadline, so rate-limit waits while
        listing count against it too.

        Raises:
            FetchError: naming the failed step, or ScanTimeoutError past the deadline
        """
        async def _gather_and_scan():
            queries = await gather_pull_request_queries(self.client, owner, repo, number, progress)
            logger.info(f"Scanning {len(queries)} file changes from pull request #{number}")
            try:
                return await self.check_file_content_from_queries(queries)
            except FetchError as e:
                raise FetchError(f"Failed to scan commits from pull request #{number}") from e

        try:
            return await asyncio.wait_for(_gather_and_scan(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise ScanTimeoutError(
                f"Scan of pull request #{number} did not finish within {self.timeout:g}s"
            ) from e

    async def check_file_content_from_queries(self, queries: List[FileQuery]) -> List[ScanResult]:
        """
        Scan explicit file states spanning a commit range.

        Queries must be ordered by commit (oldest first). Returns one sealed
        ScanResult per commit with matches, in commit order, with resolution
        already applied.

        Raises:
            FetchError: any fetch failure, or ScanTimeoutError past the deadline.
                No partial results are returned.
        """
        cache = ContentCache(self.client.fetch_file_content, self.max_concurrent_fetches)
        tasks = [asyncio.ensure_future(self._inspect_file(cache, query)) for query in queries]

        try:
            observations = await asyncio.wait_for(asyncio.gather(*tasks), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise ScanTimeoutError(
                f"Scan of {len(queries)} file changes exceeded {self.timeout:.0f}s"
            ) from e
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            cache.close()

        logger.debug(f"Fetched {cache.fetch_count} blobs for {len(queries)} file changes")

        tracker = ResolutionTracker()
        results: Dict[str, ScanResult] = {}

        for observation in observations:
            query = observation.query
            tracker.observe(query.path, query.status, observation.pattern_ids, observation.content_scanned)

            # A deletion only resolves earlier matches
            if query.status is FileState.REMOVED or not observation.has_matches:
                continue

            result = results.get(query.commit_sha)
            if result is None:
                result = results[query.commit_sha] = ScanResult(query.commit_sha)

            url = blob_url(query.owner, query.repo, query.commit_sha, query.path, self.html_url)
            if observation.path_patterns:
                result.add_file_match(FileMatch(query.path, url, observation.path_patterns, query))
            if observation.line_matches:
                result.add_content_match(ContentMatch(query.path, url, observation.line_matches, query))

        ordered = list(results.values())
        resolved = tracker.apply(ordered)
        if resolved:
            logger.info(f"{resolved} matches are no longer present at the head of the range")

        return [result.seal() for result in ordered]

    async def _inspect_file(self, cache: ContentCache, query: FileQuery) -> FileObservation:
        path_patterns = self.patterns.match_path(query.path)

        if query.status is FileState.REMOVED:
            return FileObservation(query, path_patterns, [])

        line_matches = None
        if not is_binary_path(query.path):
            content = await cache.get(query)
            if content is not None:
                line_matches = self._match_blob(query, content)

        if line_matches is None:
            return FileObservation(query, path_patterns, [], content_scanned=False)
        return FileObservation(query, path_patterns, line_matches)

    def _match_blob(self, query: FileQuery, content: bytes) -> Optional[List[LineMatch]]:
        """Content matches of a blob, or None when the blob is too large or binary."""
        if len(content) > self.max_file_size:
            logger.debug(f"Skipping large file: {query.path} ({len(content)} bytes)")
            return None

        if is_binary_content(content):
            logger.debug(f"Skipping binary file (content): {query.path}")
            return None

        return self.patterns.match_content(content.decode("utf-8", errors="ignore"))

    # --- single-body triggers ---

    def check_issue(self, event: IssueEvent) -> ScanResult:
        return self._scan_text(f"issue #{event.number}", event.body, event.html_url)

    def check_issue_comment(self, event: IssueCommentEvent) -> ScanResult:
        return self._scan_text(f"comment {event.comment_id} on #{event.number}", event.body, event.html_url)

    def check_pull_request(self, event: PullRequestEvent) -> ScanResult:
        return self._scan_text(f"pull request #{event.number}", event.body, event.html_url)

    def check_pull_request_review(self, event: PullRequestReviewEvent) -> ScanResult:
        return self._scan_text(f"review {event.review_id} on #{event.number}", event.body, event.html_url)

    def check_pull_request_review_comment(self, event: PullRequestReviewCommentEvent) -> ScanResult:
        return self._scan_text(
            f"review comment {event.comment_id} on #{event.number}", event.body, event.html_url
        )

    def _scan_text(self, identifier: str, text: Optional[str], url: str) -> ScanResult:
        """Content patterns per line, path patterns on inline code tokens."""
        result = ScanResult(identifier)
        if text:
            for token in dict.fromkeys(INLINE_CODE_TOKEN.findall(text)):
                path_patterns = self.patterns.match_path(token)
                if path_patterns:
                    result.add_file_match(FileMatch(token, url, path_patterns))

            line_matches = self.patterns.match_content(text)
            if line_matches:
                result.add_content_match(ContentMatch(identifier, url, line_matches))

        return result.seal()


async def gather_pull_request_queries(
    client, owner: str, repo: str, number: int, progress: bool = False
) -> List[FileQuery]:
    """
    List every file change of a pull request as FileQueries, commits in order.

    Raises:
        FetchError: naming the step that failed
    """
    try:
        commits = await client.list_pull_request_commits(owner, repo, number)
    except FetchError as e:
        raise FetchError(f"Failed to get commits from pull request #{number}") from e

    # Commit listings carry no timestamps; the API order is taken as commit order
    queries = []
    with tqdm(total=len(commits), desc=f"Listing files of #{number}", unit="commit", disable=not progress) as pbar:
        for commit_sha in commits:
            try:
                files = await client.get_commit_files(owner, repo, commit_sha)
            except FetchError as e:
                raise FetchError(f"Failed to get commit {commit_sha} from pull request #{number}") from e
            queries.extend(build_file_queries(owner, repo, commit_sha, files))
            pbar.update(1)

    return queries


# ===================================================================
# REMEDIATION
# ===================================================================

REMEDIATION_HINTS = {
    "PRIVATE_KEY": "Generate a new keypair, replace the public key wherever it is trusted and revoke the old one.",
    "PRIVATE_KEY_FILE": "Treat the key as compromised: issue a new key and revoke the committed one.",
    "SSH_PRIVATE_KEY_FILE": "Remove the public key from every authorized_keys and deploy key list, then generate a new one.",
    "AWS_ACCESS_KEY_ID": "Deactivate the key in IAM, review CloudTrail for unauthorized use and create a new key.",
    "GITHUB_TOKEN": "Revoke the token at github.com/settings/tokens and create a replacement with minimal scopes.",
    "SLACK_TOKEN": "Regenerate the token in the Slack app settings and update integrations.",
    "STRIPE_KEY": "Roll the key in the Stripe dashboard and review recent API activity.",
    "DATABASE_URI": "Change the database password and review access logs for unknown clients.",
    "ENV_FILE": "Rotate every value in the file and add it to .gitignore.",
}
DEFAULT_REMEDIATION_HINT = "Rotate the credential and assume it has been exposed."

HISTORY_CLEANUP_NOTE = (
    "Removing the data in a later commit does not remove it from the history. "
    "Purge it with git-filter-repo (git filter-repo --path <file> --invert-paths) "
    "or BFG Repo-Cleaner, then force-push and ask collaborators to re-clone."
)


def build_title(results: List[ScanResult]) -> str:
    if len(results) > 1:
        return f"Potentially sensitive data found in {len(results)} commits"
    return "Potentially sensitive data found in a commit"


def _render_results(results: List[ScanResult], annotate_resolved: bool = False) -> str:
    """Per-commit sections: dangerous file bullets, then content locators per file."""
    body = ""
    for result in results:
        resolved_keys = {match.key for match in result.matches if match.resolved}
        body += f"Introduced in {result.identifier}:\n\n"

        if result.file_matches:
            body += "Potentially sensitive files:\n"
            for file_match in result.file_matches:
                suffix = ""
                if annotate_resolved and all(
                    (file_match.path, pattern.pattern_id) in resolved_keys for pattern in file_match.patterns
                ):
                    suffix = " (removed in a later commit)"
                body += f"- [{file_match.path}]({file_match.url}){suffix}\n"
            body += "\n"

        if result.content_matches:
            body += "Files containing potentially sensitive data:\n"
            for content_match in result.content_matches:
                body += f"### {content_match.path}\n"
                for line_match in content_match.line_matches:
                    suffix = ""
                    if annotate_resolved and (content_match.path, line_match.pattern.pattern_id) in resolved_keys:
                        suffix = " (removed in a later commit)"
                    body += f"- {content_match.url}#L{line_match.line_number} ({line_match.pattern.name}){suffix}\n"
                body += "\n"

    return body


def build_push_report(results: List[ScanResult]) -> Tuple[str, str]:
    """Title and body of the tracking issue opened for a push."""
    body = "Potentially sensitive data has recently been pushed to this repository.\n\n"
    body += _render_results(results)

    pattern_names = sorted({match.pattern.name for result in results for match in result.matches})
    body += "---\nNext steps:\n"
    for name in pattern_names:
        body += f"- **{name}**: {REMEDIATION_HINTS.get(name, DEFAULT_REMEDIATION_HINT)}\n"
    body += f"\n{HISTORY_CLEANUP_NOTE}\n"

    return build_title(results), body


def build_check_run_message(results: List[ScanResult]) -> Tuple[str, str]:
    """Summary and detail text written to a completed check run."""
    summary = build_title(results)
    if all_matches_are_resolved(results):
        summary += ", since removed"
    text = _render_results(results, annotate_resolved=True) + HISTORY_CLEANUP_NOTE + "\n"
    return summary, text


def build_reminder_comment(check_run_url: str) -> str:
    body = "## :warning: Heads up!\n"
    body += "It looks like there is _potentially_ sensitive information in the commit history, "
    body += "but it appears to have since been removed.\n"
    body += f"See the [Secret Guard check results]({check_run_url}) for more information.\n"
    body += "If any sensitive information is in the history, please make sure it is addressed appropriately."
    return body


def build_comment_warning(author: Optional[str], source: str, result: ScanResult) -> str:
    """
    Warning posted where a body-trigger match was found.

    The matched text is never echoed back, and flagged file names are not
    wrapped in backticks so the comment itself scans clean.
    """
    line_numbers = sorted({
        line_match.line_number
        for content_match in result.content_matches
        for line_match in content_match.line_matches
    })
    pattern_names = sorted({match.pattern.name for match in result.matches})

    mention = f"@{author} " if author else ""
    body = f"{mention}:warning: This {source} appears to contain potentially sensitive information.\n\n"
    if line_numbers:
        body += "Flagged lines: " + ", ".join(str(n) for n in line_numbers) + "\n"
    if result.file_matches:
        body += f"References to potentially sensitive files: {len(result.file_matches)}\n"
    body += "Detected: " + ", ".join(pattern_names) + "\n\n"
    body += (
        f"Please edit the {source} to remove the data and rotate any credentials it exposed. "
        f"Earlier revisions remain visible in the edit history."
    )
    return body


class Remediator:
    """Turns scan results into issues and comments."""

    def __init__(self, client):
        self.client = client

    async def remediate_push(self, event: PushEvent, results: List[ScanResult]) -> IssueRef:
        """Open exactly one tracking issue for the push, assigned to the pusher."""
        title, body = build_push_report(results)
        issue = await self.client.create_issue(event.owner, event.repo, title, body, assignee=event.pusher)
        logger.info(
            f"Opened issue #{issue.number} in {event.owner}/{event.repo} for {len(results)} commits",
            extra={"repo": f"{event.owner}/{event.repo}", "finding_count": sum(len(r.matches) for r in results)}
        )
        return issue

    async def remediate_comment(
        self, owner: str, repo: str, number: int, author: Optional[str], source: str, result: ScanResult
    ) -> None:
        body = build_comment_warning(author, source, result)
        await self.client.create_issue_comment(owner, repo, number, body)
        logger.info(f"Posted warning on {owner}/{repo}#{number} for {source}")

    async def post_reminder(self, owner: str, repo: str, number: int, check_run_url: str) -> None:
        await self.client.create_issue_comment(owner, repo, number, build_reminder_comment(check_run_url))


# ===================================================================
# CHECK RUNS
# ===================================================================

class CheckRunState(Enum):
    CREATED = "created"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class CheckRunController:
    """
    Lifecycle of one check run: Created -> InProgress -> Completed(conclusion).

    Transitions only move forward and the completion is written exactly once.
    """

    def __init__(self, client, owner: str, repo: str, head_sha: str, name: str = CHECK_RUN_NAME):
        self.client = client
        self.owner = owner
        self.repo = repo
        self.head_sha = head_sha
        self.name = name
        self.state = CheckRunState.CREATED
        self.check_run: Optional[CheckRun] = None

    async def start(self) -> CheckRun:
        if self.state is not CheckRunState.CREATED:
            raise CheckRunStateError(f"Cannot start a check run in state {self.state.value}")

        ref = await self.client.create_check_run(self.owner, self.repo, self.name, self.head_sha)
        self.check_run = CheckRun(
            id=ref.id, head_sha=self.head_sha, owner=self.owner, repo=self.repo, html_url=ref.html_url
        )
        self.state = CheckRunState.IN_PROGRESS
        logger.debug(f"Check run {ref.id} created", extra={"check_run_id": ref.id})
        return self.check_run

    async def complete(self, conclusion: CheckRunConclusion, summary: str, text: Optional[str] = None) -> None:
        if self.state is not CheckRunState.IN_PROGRESS:
            raise CheckRunStateError(f"Cannot complete a check run in state {self.state.value}")

        self.state = CheckRunState.COMPLETED
        self.check_run.status = CheckRunStatus.COMPLETED
        self.check_run.conclusion = conclusion

        try:
            await self.client.update_check_run(
                self.owner, self.repo, self.check_run.id,
                CheckRunStatus.COMPLETED.value, conclusion.value,
                self.name, summary, text
            )
        except RemediationError as e:
            # TODO: persist check runs so orphaned ones can be swept on restart
            logger.error(
                f"Failed to update check run {self.check_run.id}: {e}",
                extra={"check_run_id": self.check_run.id}
            )
            return

        logger.debug(f"Check run {self.check_run.id} completed with conclusion \"{conclusion.value}\"")

    async def fail(self, summary: str, error: BaseException) -> None:
        await self.complete(CheckRunConclusion.FAILURE, summary)
        logger.error(f"Check run {self.check_run.id} failed: {summary}", exc_info=error)

    async def run(self, scanner: Scanner, remediator: Remediator, pull_request_numbers: List[int]) -> None:
        """Evaluate the suite; the run is completed on every path, errors included."""
        try:
            await self._evaluate(scanner, remediator, pull_request_numbers)
        except (Exception, asyncio.CancelledError) as e:
            if self.state is CheckRunState.IN_PROGRESS:
                await self.fail("Unexpected error while scanning for sensitive data", e)
            raise

    async def _evaluate(self, scanner: Scanner, remediator: Remediator, pull_request_numbers: List[int]) -> None:
        if not pull_request_numbers:
            await self.complete(CheckRunConclusion.SKIPPED, NO_PULL_REQUESTS_SUMMARY)
            logger.info("No pull request exists, skipping")
            return

        for number in pull_request_numbers:
            try:
                results = await scanner.check_pull_request_commits(self.owner, self.repo, number)
            except FetchError as e:
                await self.fail(str(e), e)
                return

            if not results:
                logger.debug(f"No matches to address in pull request #{number}")
                continue

            # TODO: only act on new results once scan results are persisted
            summary, text = build_check_run_message(results)
            if all_matches_are_resolved(results):
                logger.info(f"Matches found but resolved in pull request #{number}, passing check with reminder")
                try:
                    await remediator.post_reminder(self.owner, self.repo, number, self.check_run.html_url)
                except RemediationError as e:
                    logger.error(f"Failed to reply to pull request #{number} with commit history warning: {e}")
                await self.complete(CheckRunConclusion.SUCCESS, summary, text)
            else:
                logger.debug("Potentially sensitive information detected, failing check")
                await self.complete(CheckRunConclusion.FAILURE, summary, text)
            return

        await self.complete(CheckRunConclusion.SUCCESS, "No issues detected")


# ===================================================================
# EVENT HANDLING
# ===================================================================

class PayloadHandler:
    """Handlers for every supported event, bound to one installation's client."""

    def __init__(
        self,
        client,
        pattern_store: PatternStore,
        check_run_name: str = CHECK_RUN_NAME,
        scan_timeout: float = SCAN_TIMEOUT_SECONDS
    ):
        self.client = client
        self.scanner = Scanner(pattern_store, client, timeout=scan_timeout)
        self.remediator = Remediator(client)
        self.check_run_name = check_run_name

    async def handle_installation(self, event: InstallationEvent) -> None:
        # Repository history is not scanned on installation
        logger.info(f"Handling installation event ({event.action}) from {event.sender}")

    async def handle_push(self, event: PushEvent) -> None:
        logger.info(f"Handling push event from {event.owner}/{event.repo} to ref {event.ref}")

        if event.deleted or not event.commits or event.branch is None:
            logger.debug("Nothing to scan in this push")
            return

        # An open pull request for the branch gets the check run instead
        try:
            pull_requests = await self.client.list_open_pull_requests(
                event.owner, event.repo, f"{event.owner}:{event.branch}"
            )
        except FetchError as e:
            logger.warning(f"Could not list pull requests for {event.ref}, scanning push anyway: {e}")
            pull_requests = []

        if pull_requests:
            logger.info(f"Pull request already exists for {event.ref}, skipping check")
            return

        try:
            results = await self.scanner.check_push(event)
        except FetchError as e:
            logger.error(f"Failed to scan push to {event.ref}: {e}", exc_info=e)
            return

        if not results:
            logger.debug("No matches to address")
            return

        logger.debug("Potentially sensitive information detected")
        try:
            await self.remediator.remediate_push(event, results)
        except RemediationError as e:
            logger.error(f"Failed to open issue for push to {event.ref}: {e}")
            return
        logger.debug("Matches addressed")

    async def _address_body(self, event, source: str, result: ScanResult) -> None:
        if not result.has_matches():
            logger.debug("No matches to address")
            return

        logger.debug("Potentially sensitive information detected")
        try:
            await self.remediator.remediate_comment(
                event.owner, event.repo, event.number, event.author, source, result
            )
        except RemediationError as e:
            logger.error(f"Failed to warn on {event.owner}/{event.repo}#{event.number}: {e}")
            return
        logger.debug("Matches addressed")

    async def handle_issue(self, event: IssueEvent) -> None:
        logger.info(f"Handling issue event from {event.owner}/{event.repo}#{event.number}")
        await self._address_body(event, "issue", self.scanner.check_issue(event))

    async def handle_issue_comment(self, event: IssueCommentEvent) -> None:
        logger.info(
            f"Handling issue comment event from {event.owner}/{event.repo}#{event.number} ({event.comment_id})"
        )
        await self._address_body(event, "comment", self.scanner.check_issue_comment(event))

    async def handle_pull_request(self, event: PullRequestEvent) -> None:
        logger.info(f"Handling pull request event from {event.owner}/{event.repo}#{event.number}")
        await self._address_body(event, "pull request", self.scanner.check_pull_request(event))

    async def handle_pull_request_review(self, event: PullRequestReviewEvent) -> None:
        logger.info(
            f"Handling pull request review event from {event.owner}/{event.repo}#{event.number} ({event.review_id})"
        )
        await self._address_body(event, "review", self.scanner.check_pull_request_review(event))

    async def handle_pull_request_review_comment(self, event: PullRequestReviewCommentEvent) -> None:
        logger.info(
            f"Handling pull request review comment event from "
            f"{event.owner}/{event.repo}#{event.number} ({event.comment_id})"
        )
        await self._address_body(event, "review comment", self.scanner.check_pull_request_review_comment(event))

    async def handle_check_suite(self, event: CheckSuiteEvent) -> None:
        logger.info(
            f"Handling check suite event from {event.owner}/{event.repo} ({event.check_suite_id})",
            extra={"repo": f"{event.owner}/{event.repo}", "event": "check_suite"}
        )

        controller = CheckRunController(self.client, event.owner, event.repo, event.head_sha, self.check_run_name)
        try:
            await controller.start()
        except RemediationError as e:
            logger.error(f"Failed to create check run for {event.head_sha}: {e}")
            return

        await controller.run(self.scanner, self.remediator, event.pull_request_numbers)


class EventDispatcher:
    """Routes each typed event to its handler with a client for its installation."""

    def __init__(
        self,
        pattern_store: PatternStore,
        client_factory: Callable[[Optional[int]], Any],
        check_run_name: str = CHECK_RUN_NAME,
        scan_timeout: float = SCAN_TIMEOUT_SECONDS
    ):
        self.pattern_store = pattern_store
        self.client_factory = client_factory
        self.check_run_name = check_run_name
        self.scan_timeout = scan_timeout

    async def dispatch(self, event: Event) -> None:
        client = self.client_factory(event.installation_id)
        handler = PayloadHandler(client, self.pattern_store, self.check_run_name, self.scan_timeout)

        try:
            if isinstance(event, PushEvent):
                await handler.handle_push(event)
            elif isinstance(event, IssueEvent):
                await handler.handle_issue(event)
            elif isinstance(event, IssueCommentEvent):
                await handler.handle_issue_comment(event)
            elif isinstance(event, PullRequestEvent):
                await handler.handle_pull_request(event)
            elif isinstance(event, PullRequestReviewEvent):
                await handler.handle_pull_request_review(event)
            elif isinstance(event, PullRequestReviewCommentEvent):
                await handler.handle_pull_request_review_comment(event)
            elif isinstance(event, CheckSuiteEvent):
                await handler.handle_check_suite(event)
            elif isinstance(event, InstallationEvent):
                await handler.handle_installation(event)
            else:
                raise TypeError(f"Unsupported event type: {type(event).__name__}")
        finally:
            client.close()


# ===================================================================
# WEBHOOK SERVER
# ===================================================================

DISPATCHER_KEY = web.AppKey("dispatcher", EventDispatcher)
WEBHOOK_SECRET_KEY = web.AppKey("webhook_secret", str)
TASKS_KEY = web.AppKey("tasks", set)


def verify_signature(secret: str, body: bytes, signature_header: Optional[str]) -> bool:
    """Check an X-Hub-Signature-256 header against the shared secret."""
    prefix = "sha256="
    if not signature_header or not signature_header.startswith(prefix):
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature_header[len(prefix):])


def _log_task_result(task: "asyncio.Task") -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error(f"Event handling failed: {error}", exc_info=error)


async def handle_webhook(request: web.Request) -> web.Response:
    app = request.app
    body = await request.read()
    delivery = request.headers.get("X-GitHub-Delivery", "")
    event_name = request.headers.get("X-GitHub-Event", "")

    secret = app[WEBHOOK_SECRET_KEY]
    if secret and not verify_signature(secret, body, request.headers.get("X-Hub-Signature-256")):
        logger.warning(f"Rejected delivery {delivery}: invalid signature", extra={"delivery": delivery})
        return web.json_response({"error": "invalid signature"}, status=401)

    if event_name == "ping":
        return web.json_response({"status": "pong"})

    try:
        payload = json.loads(body)
        event = parse_event(event_name, payload)
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        logger.warning(f"Rejected delivery {delivery}: malformed {event_name} payload ({e})")
        return web.json_response({"error": "malformed payload"}, status=400)

    if event is None:
        logger.debug(f"Ignoring {event_name} delivery {delivery}", extra={"event": event_name})
        return web.json_response({"status": "ignored"}, status=202)

    # GitHub expects an answer within seconds; scans continue in the background
    task = asyncio.create_task(app[DISPATCHER_KEY].dispatch(event))
    app[TASKS_KEY].add(task)
    task.add_done_callback(app[TASKS_KEY].discard)
    task.add_done_callback(_log_task_result)

    logger.info(f"Accepted {event_name} delivery {delivery}", extra={"event": event_name, "delivery": delivery})
    return web.json_response({"status": "accepted"}, status=202)


async def handle_health(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok", "version": __version__})


async def _drain_tasks(app: web.Application) -> None:
    tasks = list(app[TASKS_KEY])
    if tasks:
        logger.info(f"Waiting for {len(tasks)} in-flight events")
        await asyncio.wait(tasks)


def create_app(dispatcher: EventDispatcher, webhook_secret: str = "") -> web.Application:
    app = web.Application()
    app[DISPATCHER_KEY] = dispatcher
    app[WEBHOOK_SECRET_KEY] = webhook_secret
    app[TASKS_KEY] = set()
    app.router.add_post("/webhook", handle_webhook)
    app.router.add_get("/healthz", handle_health)
    app.on_cleanup.append(_drain_tasks)
    return app


async def _read_private_key(filepath: str) -> str:
    try:
        async with aiofiles.open(filepath, 'r') as f:
            return await f.read()
    except OSError as e:
        raise ConfigurationError(f"Cannot read GitHub App private key {filepath}: {e}") from e


async def init_app(args: argparse.Namespace) -> web.Application:
    """Load patterns and credentials, then build the webhook application."""
    pattern_store = await load_patterns(args.patterns, EXTEND_DEFAULT_PATTERNS)

    private_key = None
    if GITHUB_APP_PRIVATE_KEY_FILE:
        private_key = await _read_private_key(GITHUB_APP_PRIVATE_KEY_FILE)

    factory = GitHubClientFactory(
        app_id=GITHUB_APP_ID or None,
        private_key=private_key,
        token=GITHUB_TOKEN,
        base_url=GITHUB_API_URL
    )
    if not WEBHOOK_SECRET:
        logger.warning("WEBHOOK_SECRET is not set, webhook signatures will not be verified")

    dispatcher = EventDispatcher(pattern_store, factory, CHECK_RUN_NAME, SCAN_TIMEOUT_SECONDS)
    return create_app(dispatcher, WEBHOOK_SECRET)


# ===================================================================
# COMMAND LINE INTERFACE
# ===================================================================

def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments and display help information."""
    parser = argparse.ArgumentParser(
        description='GitHub App that guards repositories against committed secrets',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
ENVIRONMENT VARIABLES:
  GITHUB_APP_ID                 GitHub App id (webhook mode)
  GITHUB_APP_PRIVATE_KEY_FILE   GitHub App private key (webhook mode)
  GITHUB_TOKEN                  Token used without App credentials and by scan-pull
  WEBHOOK_SECRET                Shared secret for webhook signatures
  PATTERNS_FILE                 JSON pattern file
  SCAN_TIMEOUT_SECONDS          Deadline for one scan (default: 300)

EXIT CODES:
  0   Success (no unresolved findings)
  1   Error (missing config, API failure, etc.)
  2   Unresolved findings (scan-pull)
  130 Interrupted by user (Ctrl+C)
        '''
    )

    parser.add_argument(
        '--patterns',
        type=str,
        metavar='FILE',
        default=PATTERNS_FILE,
        help='Path to a JSON pattern file'
    )

    parser.add_argument(
        '--log-format',
        type=str,
        choices=['text', 'json'],
        default=LOG_FORMAT,
        help=f'Logging format (default: {LOG_FORMAT})'
    )

    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose debug logging'
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'%(prog)s {__version__}'
    )

    parser.set_defaults(command="serve", host=HOST, port=PORT)
    subparsers = parser.add_subparsers(dest="command")

    serve_parser = subparsers.add_parser('serve', help='Run the webhook receiver (default)')
    serve_parser.add_argument('--host', type=str, default=HOST, help=f'Listen address (default: {HOST})')
    serve_parser.add_argument('--port', type=int, default=PORT, help=f'Listen port (default: {PORT})')

    scan_parser = subparsers.add_parser('scan-pull', help='Dry-run the check for one pull request')
    scan_parser.add_argument('repository', type=str, help='Repository as owner/name')
    scan_parser.add_argument('number', type=int, help='Pull request number')

    validate_parser = subparsers.add_parser('validate-patterns', help='Validate a pattern file')
    validate_parser.add_argument('file', type=str, help='JSON pattern file')

    return parser.parse_args(argv)


async def scan_pull_request_async(
    pattern_store: PatternStore, client, owner: str, repo: str, number: int
) -> List[ScanResult]:
    return await Scanner(pattern_store, client).check_pull_request_commits(owner, repo, number, progress=True)


def _run_scan_pull(args: argparse.Namespace) -> int:
    owner, _, repo = args.repository.partition("/")
    if not owner or not repo:
        logger.error(f"Repository must be given as owner/name, got {args.repository!r}")
        return 1

    if not GITHUB_TOKEN:
        logger.error("ERROR: GITHUB_TOKEN environment variable not set")
        logger.error("Create a token at: https://github.com/settings/tokens")
        return 1

    async def _scan():
        pattern_store = await load_patterns(args.patterns, EXTEND_DEFAULT_PATTERNS)
        client = GitHubClientFactory(token=GITHUB_TOKEN, base_url=GITHUB_API_URL)(None)
        try:
            return await scan_pull_request_async(pattern_store, client, owner, repo, args.number)
        finally:
            logger.info(f"Rate limiter stats: {client.rate_limiter.get_stats()}")
            client.close()

    results = asyncio.run(_scan())
    if not results:
        logger.info(f"No issues detected in {args.repository}#{args.number}")
        return 0

    summary, text = build_check_run_message(results)
    print(f"# {summary}\n")
    print(text)
    return 0 if all_matches_are_resolved(results) else 2


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point with validation and error handling."""
    args = parse_arguments(argv)

    setup_logging(args.log_format)
    if args.verbose:
        logger.setLevel(logging.DEBUG)

    try:
        if args.command == "validate-patterns":
            pattern_store = asyncio.run(load_pattern_file_async(args.file))
            logger.info(
                f"{args.file}: {len(pattern_store.path_patterns)} path patterns, "
                f"{len(pattern_store.content_patterns)} content patterns"
            )
            return 0

        if args.command == "scan-pull":
            return _run_scan_pull(args)

        logger.info("=" * 70)
        logger.info("REPOSITORY SECRET GUARD")
        logger.info("=" * 70)
        logger.info(f"Listening on: {args.host}:{args.port}")
        logger.info(f"Check run name: {CHECK_RUN_NAME}")
        logger.info(f"Scan timeout: {SCAN_TIMEOUT_SECONDS:.0f}s")
        logger.info("=" * 70)
        web.run_app(init_app(args), host=args.host, port=args.port, print=None)
        return 0

    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    except FetchError as e:
        logger.error(f"GitHub API error: {e}", exc_info=True)
        return 1
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return 130


if __name__ == "__main__":
    sys.exit(main())
