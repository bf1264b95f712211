#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: 2025 The Linux Foundation

"""
Commit Sleep-Schedule Estimator - Multi-Host Commit Time-of-Day Analysis Tool

This script profiles named subjects from their public commit history:
- Resolves each configured source (hosting account or single repository)
- Detects the hosting API dialect (GitHub, GitLab, Gitea/Forgejo) by known
  host suffix or by probing well-known API endpoints
- Enumerates the most recently active repositories of each account
- Clones commit metadata only (no file content) and reads the commit log
- Keeps commits attributable to the subject inside the recency window
- Deduplicates commits seen through several sources
- Builds an hour-of-day histogram and infers the longest low-activity window

Architecture:
- Single script with modular internal structure
- Configuration-driven (YAML subjects file + settings overrides)
- Immutable run settings threaded through every component
- Injectable host prober, enumerator and acquirer for deterministic testing
- Bounded thread pool for all network-bound work
"""

import argparse
import concurrent.futures
import copy
import datetime
import enum
import hashlib
import json
import logging
import math
import os
import re
import subprocess
import sys
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

try:
    import yaml  # type: ignore
except ImportError:
    print(
        "ERROR: PyYAML is required. Install with: pip install PyYAML", file=sys.stderr
    )
    sys.exit(1)

try:
    import httpx  # type: ignore
except ImportError:
    print("ERROR: httpx is required. Install with: pip install httpx", file=sys.stderr)
    sys.exit(1)

# =============================================================================
# CONSTANTS AND DEFAULTS
# =============================================================================

SCRIPT_VERSION = "1.0.0"
SNAPSHOT_SCHEMA_VERSION = "1.0.0"
DEFAULT_CONFIG_FILE = "subjects.yaml"
DEFAULT_OUTPUT_DIR = "subjects"
LOGGER_NAME = "sleep_schedule"
USER_AGENT = f"sleep-schedule/{SCRIPT_VERSION}"

HOURS_PER_DAY = 24
PAGE_SIZE = 100
PROBE_TIMEOUT = 3.0
MIN_SLEEP_WINDOW_HOURS = 4
LOW_ACTIVITY_FRACTION = 0.05
TERMINAL_WIDTH = 80

# HTTP answers that prove an API is mounted at a probed path
PROBE_PRESENT_STATUSES = frozenset({200, 401, 403})
RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})

GIT_LOG_FIELD_SEPARATOR = "\x1f"
GIT_LOG_FORMAT = "%H%x1f%an%x1f%ae%x1f%cI"

DEFAULT_SETTINGS: Dict[str, Any] = {
    "lookback_days": 365,
    "logging": {"level": "INFO", "include_timestamps": True},
    "performance": {"max_workers": 8},
    "timeouts": {
        "probe": PROBE_TIMEOUT,
        "api": 30.0,
        "api_connect": 10.0,
        "git": 300,
    },
    "retry": {"attempts": 3, "backoff_base": 1.0, "max_delay": 30.0},
    "output": {
        "stdout": True,
        "scatter": False,
        "histogram": False,
        "write": False,
        "directory": DEFAULT_OUTPUT_DIR,
    },
    "tokens": {},
}


# Settings sections that must be mappings
SETTINGS_SECTIONS = ("logging", "performance", "timeouts", "retry", "output", "tokens")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class HostDialect(enum.Enum):
    """Hosting API shapes the enumerator knows how to talk to."""

    GITHUB = "github"
    GITLAB = "gitlab"
    GITEA = "gitea"
    UNKNOWN = "unknown"


TOKEN_ENVIRONMENT_VARIABLES = {
    HostDialect.GITHUB: "GITHUB_TOKEN",
    HostDialect.GITLAB: "GITLAB_TOKEN",
    HostDialect.GITEA: "GITEA_TOKEN",
}

# Checked in order; first suffix match wins
KNOWN_HOST_SUFFIXES: Tuple[Tuple[str, HostDialect], ...] = (
    ("github.com", HostDialect.GITHUB),
    ("gitlab.com", HostDialect.GITLAB),
    ("gitea.com", HostDialect.GITEA),
    ("codeberg.org", HostDialect.GITEA),
    ("forgejo.org", HostDialect.GITEA),
)

# Probe priority order for hosts that match no known suffix
PROBE_PATHS: Tuple[Tuple[str, HostDialect], ...] = (
    ("/api/v3", HostDialect.GITHUB),
    ("/api/v4/version", HostDialect.GITLAB),
    ("/api/v1/version", HostDialect.GITEA),
)


# =============================================================================
# EXCEPTIONS
# =============================================================================


class ConfigurationError(Exception):
    """Raised for unreadable or malformed top-level configuration."""

    pass


class SourceParseError(Exception):
    """Raised when a configured source string cannot be parsed."""

    pass


class EnumerationError(Exception):
    """Raised when a hosting API repository listing fails."""

    pass


class AcquisitionError(Exception):
    """Raised when commit metadata cannot be retrieved for a repository."""

    pass


# =============================================================================
# API STATISTICS
# =============================================================================


class APIStatistics:
    """Track statistics for hosting API calls, host probes and clones."""

    API_TYPES = ("github", "gitlab", "gitea")

    def __init__(self):
        """Initialize statistics tracker."""
        self._lock = threading.Lock()
        self.stats: Dict[str, Any] = {
            api_type: {"success": 0, "errors": {}} for api_type in self.API_TYPES
        }
        self.stats["probes"] = {"attempted": 0, "matched": 0}
        self.stats["clones"] = {"success": 0, "failed": 0}

    def record_success(self, api_type: str) -> None:
        """Record a successful API call."""
        with self._lock:
            if api_type in self.API_TYPES:
                self.stats[api_type]["success"] += 1

    def record_error(self, api_type: str, status_code: int) -> None:
        """Record an API error by status code."""
        with self._lock:
            if api_type in self.API_TYPES:
                errors = self.stats[api_type]["errors"]
                errors[status_code] = errors.get(status_code, 0) + 1

    def record_exception(self, api_type: str, error_type: str = "exception") -> None:
        """Record an API exception (non-HTTP error)."""
        with self._lock:
            if api_type in self.API_TYPES:
                errors = self.stats[api_type]["errors"]
                errors[error_type] = errors.get(error_type, 0) + 1

    def record_probe(self, matched: bool) -> None:
        """Record one host capability probe."""
        with self._lock:
            self.stats["probes"]["attempted"] += 1
            if matched:
                self.stats["probes"]["matched"] += 1

    def record_clone(self, success: bool) -> None:
        """Record one metadata clone attempt."""
        with self._lock:
            key = "success" if success else "failed"
            self.stats["clones"][key] += 1

    def get_total_calls(self, api_type: str) -> int:
        """Get total number of API calls (success + errors)."""
        if api_type not in self.API_TYPES:
            return 0
        success = self.stats[api_type]["success"]
        errors = sum(self.stats[api_type]["errors"].values())
        return success + errors

    def get_total_errors(self, api_type: str) -> int:
        """Get total number of errors for an API."""
        if api_type not in self.API_TYPES:
            return 0
        return sum(self.stats[api_type]["errors"].values())

    def has_errors(self) -> bool:
        """Check if any API call or clone failed."""
        if any(self.get_total_errors(api_type) for api_type in self.API_TYPES):
            return True
        return self.stats["clones"]["failed"] > 0

    def format_console_output(self) -> str:
        """Format statistics for console output."""
        lines = []

        for api_type in self.API_TYPES:
            if self.get_total_calls(api_type) == 0:
                continue
            lines.append(f"\n📊 {api_type.capitalize()} API Statistics:")
            lines.append(f"   ✅ Successful calls: {self.stats[api_type]['success']}")
            total_errors = self.get_total_errors(api_type)
            if total_errors > 0:
                lines.append(f"   ❌ Failed calls: {total_errors}")
                for code, count in sorted(
                    self.stats[api_type]["errors"].items(), key=lambda x: str(x[0])
                ):
                    lines.append(f"      • Error {code}: {count}")

        probes = self.stats["probes"]
        if probes["attempted"]:
            lines.append("\n📊 Host Probes:")
            lines.append(f"   🔎 Attempted: {probes['attempted']}")
            lines.append(f"   ✅ Matched: {probes['matched']}")

        clones = self.stats["clones"]
        if clones["success"] or clones["failed"]:
            lines.append("\n📊 Metadata Clones:")
            lines.append(f"   ✅ Succeeded: {clones['success']}")
            if clones["failed"]:
                lines.append(f"   ❌ Failed: {clones['failed']}")

        return "\n".join(lines) if lines else ""


# Global statistics tracker
api_stats = APIStatistics()


# =============================================================================
# LOGGING SETUP
# =============================================================================


def setup_logging(
    level: str = "INFO", include_timestamps: bool = True
) -> logging.Logger:
    """Configure logging with structured format."""
    log_format = "[%(levelname)s]"
    if include_timestamps:
        log_format = "[%(asctime)s] " + log_format
    log_format += " %(message)s"

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=log_format,
        datefmt="%Y-%m-%d %H:%M:%S UTC" if include_timestamps else None,
    )

    logger = logging.getLogger(LOGGER_NAME)
    return logger


# =============================================================================
# CONFIGURATION LOADING AND DEEP MERGE
# =============================================================================


def deep_merge_dicts(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge two dictionaries, with override taking precedence."""
    result = copy.deepcopy(base)

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge_dicts(result[key], value)
        else:
            result[key] = copy.deepcopy(value)

    return result


def load_yaml_config(config_path: Path) -> Dict[str, Any]:
    """Load and parse a YAML configuration file."""
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"Configuration file not found: {config_path}") from e
    except OSError as e:
        raise ConfigurationError(f"Failed to read {config_path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Top level of {config_path} must be a mapping, got {type(data).__name__}"
        )
    return data


def _normalize_subject_entries(raw_subjects: Any) -> dict[str, list[str]]:
    """Validate the subjects mapping into name -> list of source strings."""
    if raw_subjects is None:
        return {}
    if not isinstance(raw_subjects, dict):
        raise ConfigurationError("'subjects' must be a mapping of name to sources")

    subjects: dict[str, list[str]] = {}
    for name, entry in raw_subjects.items():
        if isinstance(entry, dict):
            sources = entry.get("sources", [])
        else:
            sources = entry
        if sources is None:
            sources = []
        if not isinstance(sources, list) or not all(
            isinstance(s, str) for s in sources
        ):
            raise ConfigurationError(
                f"Sources for subject '{name}' must be a list of strings"
            )
        subjects[str(name)] = list(sources)
    return subjects


def _validate_settings_sections(settings: Dict[str, Any]) -> None:
    """Reject settings sections that are not mappings and unknown log levels."""
    for section in SETTINGS_SECTIONS:
        value = settings.get(section, {})
        if not isinstance(value, dict):
            raise ConfigurationError(
                f"'settings.{section}' must be a mapping, got {type(value).__name__}"
            )

    level = (settings.get("logging") or {}).get("level", "INFO")
    if not isinstance(level, str) or level.upper() not in LOG_LEVELS:
        raise ConfigurationError(
            f"Invalid log level {level!r}, expected one of {', '.join(LOG_LEVELS)}"
        )


def load_configuration(config_path: Optional[Path]) -> dict[str, Any]:
    """
    Load the subjects file and merge its settings over the defaults.

    Args:
        config_path: YAML file with ``subjects`` and optional ``settings``,
            or None to use built-in defaults with no subjects

    Returns:
        Dictionary with ``settings`` (merged) and ``subjects`` (validated)
    """
    raw: Dict[str, Any] = {}
    if config_path is not None:
        raw = load_yaml_config(config_path)

    settings_override = raw.get("settings") or {}
    if not isinstance(settings_override, dict):
        raise ConfigurationError("'settings' must be a mapping")

    settings = deep_merge_dicts(DEFAULT_SETTINGS, settings_override)
    _validate_settings_sections(settings)

    return {
        "settings": settings,
        "subjects": _normalize_subject_entries(raw.get("subjects")),
    }


def compute_config_digest(config: Dict[str, Any]) -> str:
    """Compute SHA256 digest of configuration for reproducibility tracking."""
    config_json = json.dumps(config, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(config_json.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class RunSettings:
    """Immutable per-run configuration threaded through the pipeline."""

    cutoff: datetime.datetime
    max_workers: int = 8
    probe_timeout: float = PROBE_TIMEOUT
    api_timeout: float = 30.0
    api_connect_timeout: float = 10.0
    git_timeout: int = 300
    retry_attempts: int = 3
    retry_backoff: float = 1.0
    retry_max_delay: float = 30.0
    tokens: Dict[str, str] = field(default_factory=dict)
    show_stdout: bool = True
    plot_scatter: bool = False
    plot_histogram: bool = False
    write_snapshot: bool = False
    output_dir: Path = Path(DEFAULT_OUTPUT_DIR)

    def token_for(self, dialect: HostDialect) -> Optional[str]:
        return self.tokens.get(dialect.value) or None


def compute_cutoff(
    lookback_days: int, now: Optional[datetime.datetime] = None
) -> datetime.datetime:
    """Earliest committer timestamp (exclusive) considered in scope."""
    now = now or datetime.datetime.now(datetime.timezone.utc)
    return now - datetime.timedelta(days=lookback_days)


def build_run_settings(
    config: dict[str, Any], now: Optional[datetime.datetime] = None
) -> RunSettings:
    """Freeze the merged settings mapping into a RunSettings value."""
    settings = config.get("settings", DEFAULT_SETTINGS)
    _validate_settings_sections(settings)
    timeouts = settings.get("timeouts", {})
    retry = settings.get("retry", {})
    output = settings.get("output", {})

    try:
        lookback_days = int(settings.get("lookback_days", 365))
        max_workers = int(settings.get("performance", {}).get("max_workers", 8))
        probe_timeout = float(timeouts.get("probe", PROBE_TIMEOUT))
        api_timeout = float(timeouts.get("api", 30.0))
        api_connect_timeout = float(timeouts.get("api_connect", 10.0))
        git_timeout = int(timeouts.get("git", 300))
        retry_attempts = int(retry.get("attempts", 3))
        retry_backoff = float(retry.get("backoff_base", 1.0))
        retry_max_delay = float(retry.get("max_delay", 30.0))
        output_dir = Path(output.get("directory", DEFAULT_OUTPUT_DIR))
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid setting value: {e}") from e
    if lookback_days <= 0:
        raise ConfigurationError("lookback_days must be positive")

    # Explicit config tokens win over the environment
    tokens: Dict[str, str] = {}
    configured_tokens = settings.get("tokens") or {}
    for dialect, env_var in TOKEN_ENVIRONMENT_VARIABLES.items():
        token = configured_tokens.get(dialect.value) or os.environ.get(env_var, "")
        if token:
            tokens[dialect.value] = str(token)

    return RunSettings(
        cutoff=compute_cutoff(lookback_days, now),
        max_workers=max(1, max_workers),
        probe_timeout=probe_timeout,
        api_timeout=api_timeout,
        api_connect_timeout=api_connect_timeout,
        git_timeout=git_timeout,
        retry_attempts=max(1, retry_attempts),
        retry_backoff=retry_backoff,
        retry_max_delay=retry_max_delay,
        tokens=tokens,
        show_stdout=bool(output.get("stdout", True)),
        plot_scatter=bool(output.get("scatter", False)),
        plot_histogram=bool(output.get("histogram", False)),
        write_snapshot=bool(output.get("write", False)),
        output_dir=output_dir,
    )


# =============================================================================
# DATA MODEL
# =============================================================================


@dataclass(frozen=True)
class Source:
    """One configured hosting location belonging to a subject."""

    raw_url: str
    host: str
    account: str
    repository: Optional[str] = None


@dataclass(frozen=True)
class CloneLocation:
    url: str
    account: str


@dataclass(frozen=True)
class CommitRecord:
    """Commit metadata; the identifier is the commit object hash."""

    identifier: str
    author_name: str
    author_email: str
    committed_at: datetime.datetime


@dataclass
class Subject:
    name: str
    sources: List[Source] = field(default_factory=list)
    commits: Dict[str, CommitRecord] = field(default_factory=dict)


class WindowStatus(enum.Enum):
    FOUND = "found"
    NO_CLEAR_WINDOW = "no_clear_window"
    NO_DATA = "no_data"


@dataclass(frozen=True)
class SleepWindowEstimate:
    """Outcome of the low-activity window search for one subject."""

    status: WindowStatus
    commit_count: int
    start_hour: Optional[int] = None
    length: int = 0
    threshold: Optional[int] = None

    @property
    def found(self) -> bool:
        return self.status is WindowStatus.FOUND

    @property
    def end_hour(self) -> Optional[int]:
        if self.start_hour is None:
            return None
        return (self.start_hour + self.length) % HOURS_PER_DAY


@dataclass
class SubjectReport:
    subject: Subject
    histogram: List[int]
    estimate: SleepWindowEstimate


# =============================================================================
# SOURCE AND SUBJECT PARSING
# =============================================================================


def parse_source(raw: str) -> Source:
    """
    Parse one configured source string.

    Accepts ``host/account``, ``host/account/repository`` (scheme optional,
    defaulting to https) or a fully-qualified URL. A trailing ``.git`` on the
    repository segment is dropped.
    """
    text = raw.strip()
    if not text:
        raise SourceParseError("Empty source string")

    if not text.startswith(("http://", "https://")):
        text = "https://" + text

    parsed = urlparse(text)
    try:
        port = parsed.port
    except ValueError as e:
        raise SourceParseError(f"Invalid port in {text}: {e}") from e

    host = parsed.hostname or ""
    if not host:
        raise SourceParseError(f"URL has no host: {text}")
    if port:
        host = f"{host}:{port}"

    path = parsed.path.strip("/")
    if not path:
        raise SourceParseError(f"URL has no path: {text}")

    parts = path.split("/")
    account = parts[0]
    repository = parts[1] if len(parts) >= 2 and parts[1] else None
    if repository and repository.endswith(".git"):
        repository = repository[: -len(".git")] or None

    return Source(raw_url=text, host=host, account=account, repository=repository)


def _parse_sources(
    name: str, raw_sources: Iterable[str], logger: logging.Logger
) -> List[Source]:
    sources = []
    for raw in raw_sources:
        try:
            sources.append(parse_source(raw))
        except SourceParseError as e:
            logger.warning(f"Failed to parse source {raw!r} for subject {name}: {e}")
    return sources


def build_subjects(config: dict[str, Any], logger: logging.Logger) -> List[Subject]:
    """Build Subject objects from the validated ``subjects`` mapping."""
    subjects = []
    for name, raw_sources in config.get("subjects", {}).items():
        subjects.append(
            Subject(name=name, sources=_parse_sources(name, raw_sources, logger))
        )
    return subjects


def build_subject_from_flag(user_flag: str, logger: logging.Logger) -> Subject:
    """Build a single Subject from the ad-hoc ``name@url1,url2`` form."""
    name, sep, urls = user_flag.partition("@")
    name = name.strip()
    raw_sources = [u.strip() for u in urls.split(",") if u.strip()]
    if not sep or not name or not raw_sources:
        raise ConfigurationError(
            f"Invalid subject {user_flag!r}, expected format: name@url1,url2"
        )
    return Subject(name=name, sources=_parse_sources(name, raw_sources, logger))


# =============================================================================
# HOST CAPABILITY DETECTION
# =============================================================================


def match_known_host(host: str) -> Optional[HostDialect]:
    """Return the dialect for a known hosting suffix, without network access."""
    host = host.lower()
    for suffix, dialect in KNOWN_HOST_SUFFIXES:
        if host.endswith(suffix):
            return dialect
    return None


class HostProber:
    """Probes well-known API paths of a host with a short fixed timeout."""

    def __init__(
        self,
        timeout: float = PROBE_TIMEOUT,
        stats: Optional[APIStatistics] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """Initialize prober client; redirects are reported, not followed."""
        self.stats = stats or api_stats
        self.logger = logging.getLogger(LOGGER_NAME)
        self.client = httpx.Client(
            timeout=httpx.Timeout(timeout),
            follow_redirects=False,
            headers={"User-Agent": USER_AGENT},
            transport=transport,
        )

    def __enter__(self):
        """Enter context manager."""
        return self

    def __exit__(self, *args):
        """Exit context manager and cleanup."""
        self.close()

    def close(self):
        """Close HTTP client."""
        if hasattr(self, "client"):
            self.client.close()

    def probe(self, host: str, path: str) -> bool:
        """Return True when ``https://host/path`` answers 200, 401 or 403."""
        url = f"https://{host}{path}"
        try:
            response = self.client.get(url)
        except httpx.HTTPError as e:
            self.logger.debug(f"Probe {url} failed: {e}")
            self.stats.record_probe(False)
            return False

        matched = response.status_code in PROBE_PRESENT_STATUSES
        self.logger.debug(f"Probe {url} answered {response.status_code}")
        self.stats.record_probe(matched)
        return matched


class HostCapabilityResolver:
    """Maps hostnames to API dialects, caching one answer per host."""

    def __init__(self, prober: HostProber, logger: logging.Logger):
        self.prober = prober
        self.logger = logger
        self._cache: Dict[str, HostDialect] = {}
        self._lock = threading.Lock()

    def resolve(self, host: str) -> HostDialect:
        """Resolve a host to its dialect; UNKNOWN when nothing matches."""
        host = host.lower()
        with self._lock:
            cached = self._cache.get(host)
        if cached is not None:
            return cached

        # Probing happens outside the lock; the first finished resolution wins
        dialect = self._detect(host)
        with self._lock:
            return self._cache.setdefault(host, dialect)

    def _detect(self, host: str) -> HostDialect:
        dialect = match_known_host(host)
        if dialect is not None:
            self.logger.debug(f"Host {host} matched known suffix: {dialect.value}")
            return dialect

        self.logger.debug(f"Host {host} is not a known host, probing API endpoints")
        for path, candidate in PROBE_PATHS:
            if self.prober.probe(host, path):
                self.logger.info(f"Detected {candidate.value} API on {host} via {path}")
                return candidate

        return HostDialect.UNKNOWN


# =============================================================================
# REPOSITORY ENUMERATION
# =============================================================================


@dataclass(frozen=True)
class ListingSchema:
    """Fields of one dialect's repository listing entries, in URL precedence."""

    http_url_field: Optional[str]
    clone_url_field: Optional[str]
    ssh_url_field: Optional[str]
    name_field: str
    activity_field: Optional[str]
    sort_client_side: bool = False

    @property
    def url_fields(self) -> List[str]:
        return [
            f
            for f in (self.http_url_field, self.clone_url_field, self.ssh_url_field)
            if f
        ]


GITHUB_LISTING = ListingSchema(
    http_url_field=None,
    clone_url_field="clone_url",
    ssh_url_field="ssh_url",
    name_field="name",
    activity_field="pushed_at",
)

GITLAB_LISTING = ListingSchema(
    http_url_field="http_url_to_repo",
    clone_url_field=None,
    ssh_url_field="ssh_url_to_repo",
    name_field="path",
    activity_field="last_activity_at",
)

GITEA_LISTING = ListingSchema(
    http_url_field=None,
    clone_url_field="clone_url",
    ssh_url_field="ssh_url",
    name_field="name",
    activity_field="updated_at",
    sort_client_side=True,
)


def parse_api_timestamp(value: Any) -> Optional[datetime.datetime]:
    """Parse an ISO 8601 API timestamp; None when absent or malformed."""
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed


def map_listing_entry(
    entry: Dict[str, Any], schema: ListingSchema, host: str, account: str
) -> Optional[CloneLocation]:
    """Pick the clone URL of one listing entry by field precedence."""
    for field_name in schema.url_fields:
        value = entry.get(field_name)
        if isinstance(value, str) and value:
            return CloneLocation(url=value, account=account)

    name = entry.get(schema.name_field)
    if isinstance(name, str) and name:
        return CloneLocation(url=f"https://{host}/{account}/{name}.git", account=account)
    return None


def parse_listing(
    payload: Any,
    schema: ListingSchema,
    host: str,
    account: str,
    cutoff: Optional[datetime.datetime] = None,
) -> List[CloneLocation]:
    """
    Map a decoded listing response into clone locations.

    Raises EnumerationError when the payload is not a list of objects.
    Entries whose last activity predates the cutoff cannot hold in-window
    commits and are dropped. The result is capped at PAGE_SIZE.
    """
    if not isinstance(payload, list):
        raise EnumerationError(
            f"Expected a JSON list of repositories, got {type(payload).__name__}"
        )
    for entry in payload:
        if not isinstance(entry, dict):
            raise EnumerationError(
                f"Expected repository objects, got {type(entry).__name__}"
            )

    entries = payload
    if schema.sort_client_side and schema.activity_field:
        epoch = datetime.datetime.min.replace(tzinfo=datetime.timezone.utc)
        entries = sorted(
            payload,
            key=lambda e: parse_api_timestamp(e.get(schema.activity_field)) or epoch,
            reverse=True,
        )

    locations: List[CloneLocation] = []
    for entry in entries:
        if cutoff is not None and schema.activity_field:
            last_activity = parse_api_timestamp(entry.get(schema.activity_field))
            if last_activity is not None and last_activity < cutoff:
                continue

        location = map_listing_entry(entry, schema, host, account)
        if location is None:
            logging.getLogger(LOGGER_NAME).debug(
                f"Skipping listing entry without usable URL on {host}"
            )
            continue
        locations.append(location)
        if len(locations) >= PAGE_SIZE:
            break

    return locations


class HostingAPIClient:
    """Base client for one hosting API's repository listing endpoint."""

    dialect = HostDialect.UNKNOWN
    schema: ListingSchema

    def __init__(
        self,
        host: str,
        settings: RunSettings,
        stats: Optional[APIStatistics] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """Initialize API client, attaching the dialect's token when present."""
        self.host = host
        self.settings = settings
        self.stats = stats or api_stats
        self.logger = logging.getLogger(LOGGER_NAME)

        headers = {"User-Agent": USER_AGENT, "Accept": "application/json"}
        headers.update(self._default_headers())
        token = settings.token_for(self.dialect)
        if token:
            headers.update(self._auth_headers(token))

        self.client = httpx.Client(
            timeout=httpx.Timeout(
                settings.api_timeout, connect=settings.api_connect_timeout
            ),
            follow_redirects=True,
            headers=headers,
            transport=transport,
        )

    def __enter__(self):
        """Enter context manager."""
        return self

    def __exit__(self, *args):
        """Exit context manager and cleanup."""
        self.close()

    def close(self):
        """Close HTTP client."""
        if hasattr(self, "client"):
            self.client.close()

    def _default_headers(self) -> Dict[str, str]:
        return {}

    def _auth_headers(self, token: str) -> Dict[str, str]:
        raise NotImplementedError

    def _listing_url(self, account: str) -> str:
        raise NotImplementedError

    def _listing_params(self) -> Dict[str, Any]:
        raise NotImplementedError

    def list_repositories(self, account: str) -> List[CloneLocation]:
        """List clone locations for an account, most recently active first."""
        self.logger.info(
            f"Matched host {self.host} to {self.dialect.value} API, fetching repositories for {account}"
        )
        response = self._fetch_listing(account)
        payload = self._decode(response)
        locations = parse_listing(
            payload, self.schema, self.host, account, self.settings.cutoff
        )
        self.logger.info(
            f"Found {len(locations)} candidate repositories for {account} on {self.host}"
        )
        return locations

    def _fetch_listing(self, account: str) -> httpx.Response:
        url = self._listing_url(account)
        response = self._get(url, self._listing_params())
        self._check_status(response, url)
        return response

    def _check_status(self, response: httpx.Response, url: str) -> None:
        api_type = self.dialect.value
        if 200 <= response.status_code < 300:
            self.stats.record_success(api_type)
            return

        self.stats.record_error(api_type, response.status_code)
        raise EnumerationError(
            f"{api_type} API request {url} failed with HTTP {response.status_code}: {response.text[:200]}"
        )

    def _decode(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise EnumerationError(
                f"Failed to parse JSON response from {response.request.url}: {e}"
            ) from e

    def _get(self, url: str, params: Dict[str, Any]) -> httpx.Response:
        """GET with bounded retry for rate limiting and transient server errors."""
        attempt = 1
        while True:
            try:
                response = self.client.get(url, params=params)
            except httpx.HTTPError as e:
                self.stats.record_exception(self.dialect.value, type(e).__name__)
                raise EnumerationError(
                    f"{self.dialect.value} API request {url} failed: {e}"
                ) from e

            if (
                response.status_code not in RETRYABLE_STATUSES
                or attempt >= self.settings.retry_attempts
            ):
                return response

            self.stats.record_error(self.dialect.value, response.status_code)
            self._sleep_before_retry(
                attempt, response.status_code, response.headers.get("Retry-After")
            )
            attempt += 1

    def _sleep_before_retry(
        self, attempt: int, status_code: int, retry_after: Optional[str]
    ) -> None:
        delay = self.settings.retry_backoff * (2 ** (attempt - 1))
        if retry_after:
            try:
                delay = float(retry_after)
            except ValueError:
                pass
        delay = min(max(delay, 0.0), self.settings.retry_max_delay)
        self.logger.warning(
            f"⚠️ {self.dialect.value} API on {self.host} answered HTTP {status_code}, retrying in {delay:.1f}s (attempt {attempt})"
        )
        if delay > 0:
            time.sleep(delay)


class GitHubAPIClient(HostingAPIClient):
    """Client for the GitHub (and GitHub Enterprise) REST API."""

    dialect = HostDialect.GITHUB
    schema = GITHUB_LISTING

    def _default_headers(self) -> Dict[str, str]:
        return {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    def _auth_headers(self, token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    def _listing_url(self, account: str) -> str:
        # Enterprise installs mount the API under /api/v3
        if self.host.lower().endswith("github.com"):
            base_url = "https://api.github.com"
        else:
            base_url = f"https://{self.host}/api/v3"
        return f"{base_url}/users/{account}/repos"

    def _listing_params(self) -> Dict[str, Any]:
        return {
            "type": "owner",
            "sort": "pushed",
            "direction": "desc",
            "per_page": PAGE_SIZE,
        }


class GitLabAPIClient(HostingAPIClient):
    """Client for the GitLab v4 REST API."""

    dialect = HostDialect.GITLAB
    schema = GITLAB_LISTING

    def _auth_headers(self, token: str) -> Dict[str, str]:
        return {"PRIVATE-TOKEN": token}

    def _listing_url(self, account: str) -> str:
        return f"https://{self.host}/api/v4/users/{account}/projects"

    def _group_listing_url(self, account: str) -> str:
        return f"https://{self.host}/api/v4/groups/{account}/projects"

    def _listing_params(self) -> Dict[str, Any]:
        return {
            "order_by": "last_activity_at",
            "sort": "desc",
            "per_page": PAGE_SIZE,
            "visibility": "public",
        }

    def _fetch_listing(self, account: str) -> httpx.Response:
        url = self._listing_url(account)
        response = self._get(url, self._listing_params())
        if response.status_code == 404:
            # Accounts on GitLab may be groups rather than users
            self.stats.record_error(self.dialect.value, 404)
            self.logger.debug(f"No GitLab user {account} on {self.host}, trying group")
            url = self._group_listing_url(account)
            response = self._get(url, self._listing_params())
        self._check_status(response, url)
        return response


class GiteaAPIClient(HostingAPIClient):
    """Client for the Gitea/Forgejo v1 REST API."""

    dialect = HostDialect.GITEA
    schema = GITEA_LISTING

    def _auth_headers(self, token: str) -> Dict[str, str]:
        return {"Authorization": f"token {token}"}

    def _listing_url(self, account: str) -> str:
        return f"https://{self.host}/api/v1/users/{account}/repos"

    def _listing_params(self) -> Dict[str, Any]:
        return {"limit": PAGE_SIZE}


API_CLIENT_CLASSES = {
    HostDialect.GITHUB: GitHubAPIClient,
    HostDialect.GITLAB: GitLabAPIClient,
    HostDialect.GITEA: GiteaAPIClient,
}


class RepositoryEnumerator:
    """Dispatches account listing to the client for a resolved dialect."""

    def __init__(
        self,
        settings: RunSettings,
        stats: Optional[APIStatistics] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.settings = settings
        self.stats = stats or api_stats
        self.transport = transport

    def enumerate(
        self, dialect: HostDialect, host: str, account: str
    ) -> List[CloneLocation]:
        client_class = API_CLIENT_CLASSES.get(dialect)
        if client_class is None:
            raise EnumerationError(f"No repository listing API for dialect {dialect.value}")

        with client_class(host, self.settings, self.stats, self.transport) as client:
            return client.list_repositories(account)[:PAGE_SIZE]


# =============================================================================
# REPOSITORY ACQUISITION (METADATA-ONLY GIT)
# =============================================================================


def safe_git_command(
    cmd: list[str],
    cwd: Optional[Path],
    logger: logging.Logger,
    timeout: int = 300,
) -> tuple[bool, str]:
    """
    Execute a git command safely with error handling.

    Returns:
        (success: bool, stdout on success or error text on failure)
    """
    env = dict(os.environ)
    # Never block a worker on an interactive credential prompt
    env["GIT_TERMINAL_PROMPT"] = "0"
    try:
        git_result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            encoding="utf-8",
            errors="replace",
            timeout=timeout,
            env=env,
        )
    except subprocess.TimeoutExpired:
        logger.error(f"Git command timed out in {cwd}: {' '.join(cmd)}")
        return False, "Command timed out"
    except OSError as e:
        logger.error(f"Unable to run git command in {cwd}: {e}")
        return False, str(e)

    if git_result.returncode == 0:
        return True, git_result.stdout
    return False, git_result.stderr.strip() or git_result.stdout.strip()


def parse_git_log_output(
    git_output: str, repo_name: str, logger: logging.Logger
) -> List[CommitRecord]:
    """
    Parse git log output into commit records.

    Expected format from git log --format=%H%x1f%an%x1f%ae%x1f%cI
    """
    commits = []
    for line in git_output.splitlines():
        if not line.strip():
            continue

        parts = line.split(GIT_LOG_FIELD_SEPARATOR)
        if len(parts) != 4:
            logger.warning(f"Malformed git log line in {repo_name}: {line[:80]!r}")
            continue

        identifier, author_name, author_email, committed = parts
        try:
            committed_at = datetime.datetime.fromisoformat(
                committed.strip().replace("Z", "+00:00")
            )
        except ValueError:
            logger.warning(f"Invalid commit date in {repo_name}: {committed!r}")
            continue
        if committed_at.tzinfo is None:
            committed_at = committed_at.replace(tzinfo=datetime.timezone.utc)

        commits.append(
            CommitRecord(
                identifier=identifier.strip(),
                author_name=author_name,
                author_email=author_email,
                committed_at=committed_at,
            )
        )
    return commits


class GitRepositoryAcquirer:
    """Retrieves commit metadata through a blob-less bare clone."""

    def __init__(
        self,
        settings: RunSettings,
        logger: logging.Logger,
        stats: Optional[APIStatistics] = None,
    ):
        self.settings = settings
        self.logger = logger
        self.stats = stats or api_stats

    def fetch_commits(self, location: CloneLocation) -> List[CommitRecord]:
        """Clone commit metadata for a location and return its HEAD history."""
        with tempfile.TemporaryDirectory(prefix="sleep-schedule-") as temp_dir:
            repo_dir = Path(temp_dir) / "repo.git"

            success, output = safe_git_command(
                [
                    "git",
                    "clone",
                    "--bare",
                    "--filter=blob:none",
                    "--quiet",
                    location.url,
                    str(repo_dir),
                ],
                Path(temp_dir),
                self.logger,
                timeout=self.settings.git_timeout,
            )
            if not success:
                self.stats.record_clone(False)
                raise AcquisitionError(f"Clone failed: {output[:200]}")

            success, output = safe_git_command(
                ["git", "log", "HEAD", f"--format={GIT_LOG_FORMAT}"],
                repo_dir,
                self.logger,
                timeout=self.settings.git_timeout,
            )
            if not success:
                self.stats.record_clone(False)
                raise AcquisitionError(f"Log traversal failed: {output[:200]}")

            self.stats.record_clone(True)
            return parse_git_log_output(output, location.url, self.logger)


# =============================================================================
# AUTHORSHIP RESOLUTION AND DEDUPLICATION
# =============================================================================


def is_commit_from_subject(
    commit: CommitRecord,
    subject_name: str,
    account: str,
    cutoff: datetime.datetime,
) -> bool:
    """
    Decide whether a commit is in the window and attributable to the subject.

    The match is a case-insensitive substring heuristic over author name and
    email only; it is knowingly approximate.
    """
    if commit.committed_at <= cutoff:
        return False

    author_name = commit.author_name.lower()
    author_email = commit.author_email.lower()

    name = subject_name.strip().lower()
    if name and name in author_name:
        return True

    account = account.strip().lower()
    if account:
        if account in author_name:
            return True
        # Also matches no-reply forms such as 123+account@users.noreply.host
        if f"{account}@" in author_email:
            return True

    return False


class CommitDeduplicator:
    """Identity-keyed commit set; the first sighting of an identifier wins."""

    def __init__(self):
        self.commits: Dict[str, CommitRecord] = {}

    def __len__(self) -> int:
        return len(self.commits)

    def add(self, commit: CommitRecord) -> bool:
        if commit.identifier in self.commits:
            return False
        self.commits[commit.identifier] = commit
        return True

    def extend(self, commits: Iterable[CommitRecord]) -> int:
        return sum(1 for commit in commits if self.add(commit))


# =============================================================================
# SLEEP WINDOW ESTIMATION
# =============================================================================


def build_hour_histogram(commits: Iterable[CommitRecord]) -> List[int]:
    """Count commits per local hour of day, as recorded in each timestamp."""
    histogram = [0] * HOURS_PER_DAY
    for commit in commits:
        histogram[commit.committed_at.hour] += 1
    return histogram


def compute_low_activity_threshold(total_commits: int) -> int:
    """Five percent of the hourly average, rounded half up, at least 1."""
    average = total_commits / HOURS_PER_DAY
    return max(1, int(math.floor(LOW_ACTIVITY_FRACTION * average + 0.5)))


def find_longest_low_activity_run(
    histogram: Sequence[int], threshold: int
) -> Tuple[int, int]:
    """
    Find the longest circular run of hours at or below the threshold.

    The day is scanned twice so a run crossing midnight is seen whole. Only a
    strictly longer run replaces the best, so the earliest one wins ties.

    Returns:
        (start_hour, length) with length capped at 24
    """
    best_start, best_length = 0, 0
    current_start, current_length = 0, 0

    for index in range(2 * HOURS_PER_DAY):
        hour = index % HOURS_PER_DAY
        if histogram[hour] <= threshold:
            if current_length == 0:
                current_start = hour
            current_length += 1
            if current_length > best_length:
                best_start, best_length = current_start, current_length
        else:
            current_length = 0

    return best_start, min(best_length, HOURS_PER_DAY)


def estimate_sleep_window(histogram: Sequence[int]) -> SleepWindowEstimate:
    """Infer the sleep window from a 24-bucket hour histogram."""
    if len(histogram) != HOURS_PER_DAY:
        raise ValueError(f"Histogram must have {HOURS_PER_DAY} buckets")

    total = sum(histogram)
    if total == 0:
        return SleepWindowEstimate(status=WindowStatus.NO_DATA, commit_count=0)

    threshold = compute_low_activity_threshold(total)
    start, length = find_longest_low_activity_run(histogram, threshold)

    if length >= MIN_SLEEP_WINDOW_HOURS:
        return SleepWindowEstimate(
            status=WindowStatus.FOUND,
            commit_count=total,
            start_hour=start,
            length=length,
            threshold=threshold,
        )
    return SleepWindowEstimate(
        status=WindowStatus.NO_CLEAR_WINDOW,
        commit_count=total,
        length=length,
        threshold=threshold,
    )


# =============================================================================
# OUTPUT RENDERING
# =============================================================================


def safe_filename(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "_", name).strip("_") or "subject"


def render_text_histogram(histogram: Sequence[int]) -> str:
    """Render one ``HH:00 (count): ####`` line per hour, scaled to 80 columns."""
    max_count = max(histogram) if histogram else 0
    width = len(str(max_count))
    scale = TERMINAL_WIDTH / max_count if max_count > TERMINAL_WIDTH else 1.0

    lines = []
    for hour, count in enumerate(histogram):
        bar = "#" * int(count * scale)
        lines.append(f"{hour:02d}:00 ({count:0{width}d}): {bar}")
    return "\n".join(lines)


def format_estimate(subject_name: str, estimate: SleepWindowEstimate) -> str:
    lines = [f"=== Sleep Schedule Estimate for {subject_name} ==="]
    if estimate.status is WindowStatus.NO_DATA:
        lines.append("No commits to analyze")
    elif estimate.found:
        lines.append(
            f"Estimated sleep window: {estimate.start_hour:02d}:00 - {estimate.end_hour:02d}:00"
        )
        lines.append(f"Duration: ~{estimate.length} hours")
        lines.append(f"Based on {estimate.commit_count} commits")
        lines.append(f"Low-activity threshold: <={estimate.threshold} commits/hour")
    else:
        lines.append(
            "Unable to identify clear sleep window (no extended low-activity period)"
        )
        lines.append(
            "This may indicate irregular sleep patterns or insufficient data"
        )
    return "\n".join(lines)


# Chart palette: green on near-black
CHART_FOREGROUND = "#95d550"
CHART_BACKGROUND = "#101010"


def _styled_axes(title: str, xlabel: str, ylabel: str):
    import matplotlib

    matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    fig, ax = plt.subplots(figsize=(10, 6))
    fig.patch.set_facecolor(CHART_BACKGROUND)
    ax.set_facecolor(CHART_BACKGROUND)
    ax.set_title(title, color=CHART_FOREGROUND)
    ax.set_xlabel(xlabel, color=CHART_FOREGROUND)
    ax.set_ylabel(ylabel, color=CHART_FOREGROUND)
    ax.tick_params(colors=CHART_FOREGROUND)
    for spine in ax.spines.values():
        spine.set_color(CHART_FOREGROUND)
    return plt, fig, ax


def plot_commits_scatter(report: SubjectReport, output_path: Path) -> Path:
    """Scatter commit date against time of day."""
    commits = sorted(report.subject.commits.values(), key=lambda c: c.committed_at)
    dates = [c.committed_at.replace(tzinfo=None) for c in commits]
    hours = [
        c.committed_at.hour + c.committed_at.minute / 60 + c.committed_at.second / 3600
        for c in commits
    ]

    plt, fig, ax = _styled_axes(
        f"Commit Schedule: {report.subject.name} (Scatter)",
        "Commit Date",
        "Time of Day",
    )
    ax.scatter(dates, hours, s=8, color=CHART_FOREGROUND)
    ax.set_ylim(0, HOURS_PER_DAY)
    ax.set_yticks(range(0, HOURS_PER_DAY + 1, 3))
    ax.set_yticklabels([f"{h:02d}:00" for h in range(0, HOURS_PER_DAY + 1, 3)])
    fig.autofmt_xdate()

    fig.savefig(output_path, dpi=100, facecolor=fig.get_facecolor())
    plt.close(fig)
    return output_path


def plot_commits_histogram(report: SubjectReport, output_path: Path) -> Path:
    """Bar chart of commits per hour of day."""
    plt, fig, ax = _styled_axes(
        f"Commit Distribution: {report.subject.name} (by Hour)",
        "Hour of Day",
        "Number of Commits",
    )
    hours = list(range(HOURS_PER_DAY))
    ax.bar(hours, report.histogram, color=CHART_FOREGROUND, edgecolor=CHART_FOREGROUND)
    ax.set_xticks(hours)
    ax.set_xticklabels([f"{h:02d}" for h in hours])

    fig.savefig(output_path, dpi=100, facecolor=fig.get_facecolor())
    plt.close(fig)
    return output_path


def build_snapshot(
    report: SubjectReport,
    config_digest: str,
    generated_at: Optional[datetime.datetime] = None,
) -> Dict[str, Any]:
    generated_at = generated_at or datetime.datetime.now(datetime.timezone.utc)
    estimate = report.estimate
    return {
        "schema_version": SNAPSHOT_SCHEMA_VERSION,
        "script_version": SCRIPT_VERSION,
        "generated_at": generated_at.isoformat(),
        "config_digest": config_digest,
        "subject": report.subject.name,
        "commit_count": len(report.subject.commits),
        "hour_counts": list(report.histogram),
        "estimate": {
            "status": estimate.status.value,
            "start_hour": estimate.start_hour,
            "end_hour": estimate.end_hour,
            "length": estimate.length,
            "threshold": estimate.threshold,
            "commit_count": estimate.commit_count,
        },
    }


def save_snapshot(
    report: SubjectReport,
    output_dir: Path,
    config_digest: str,
    generated_at: Optional[datetime.datetime] = None,
) -> Path:
    """Write ``<output_dir>/<subject>/<YYYY-MM-DD>.json`` and return its path."""
    generated_at = generated_at or datetime.datetime.now(datetime.timezone.utc)
    subject_dir = output_dir / safe_filename(report.subject.name)
    subject_dir.mkdir(parents=True, exist_ok=True)
    snapshot_path = subject_dir / f"{generated_at.strftime('%Y-%m-%d')}.json"

    with open(snapshot_path, "w", encoding="utf-8") as f:
        json.dump(
            build_snapshot(report, config_digest, generated_at),
            f,
            indent=2,
            ensure_ascii=False,
        )
    return snapshot_path


# =============================================================================
# MAIN ORCHESTRATION AND CLI ENTRY POINT
# =============================================================================


class SleepScheduleReporter:
    """Main orchestrator: sources -> repositories -> commits -> estimates."""

    def __init__(
        self,
        settings: RunSettings,
        logger: logging.Logger,
        resolver: Optional[HostCapabilityResolver] = None,
        enumerator: Optional[RepositoryEnumerator] = None,
        acquirer: Optional[GitRepositoryAcquirer] = None,
        stats: Optional[APIStatistics] = None,
    ) -> None:
        self.settings = settings
        self.logger = logger
        self.stats = stats or api_stats
        self._prober: Optional[HostProber] = None
        if resolver is None:
            self._prober = HostProber(settings.probe_timeout, self.stats)
            resolver = HostCapabilityResolver(self._prober, logger)
        self.resolver = resolver
        self.enumerator = enumerator or RepositoryEnumerator(settings, self.stats)
        self.acquirer = acquirer or GitRepositoryAcquirer(settings, logger, self.stats)

    def __enter__(self):
        """Enter context manager."""
        return self

    def __exit__(self, *args):
        """Exit context manager and cleanup."""
        self.close()

    def close(self):
        """Close the host prober this reporter created, if any."""
        if self._prober is not None:
            self._prober.close()

    def analyze_subjects(self, subjects: List[Subject]) -> List[SubjectReport]:
        """
        Run the pipeline for every subject.

        Sources of all subjects are resolved concurrently, then all clone
        locations are fetched concurrently. Filtering, deduplication and
        estimation run afterwards on the calling thread, one subject at a time.
        """
        source_jobs = [
            (index, source)
            for index, subject in enumerate(subjects)
            for source in subject.sources
        ]
        resolved = self._run_parallel(
            lambda job: self._resolve_source(job[1]),
            source_jobs,
            lambda job: job[1].raw_url,
        )

        fetch_jobs = [
            (index, location)
            for (index, _), locations in zip(source_jobs, resolved)
            for location in locations
        ]
        self.logger.info(f"Fetching commit metadata from {len(fetch_jobs)} repositories")
        fetched = self._run_parallel(
            lambda job: self._fetch_location(job[1]),
            fetch_jobs,
            lambda job: job[1].url,
        )

        per_subject: Dict[int, List[Tuple[CloneLocation, List[CommitRecord]]]] = {}
        for (index, location), commits in zip(fetch_jobs, fetched):
            per_subject.setdefault(index, []).append((location, commits))

        reports = []
        for index, subject in enumerate(subjects):
            reports.append(self._build_report(subject, per_subject.get(index, [])))
        return reports

    def _run_parallel(
        self,
        func: Callable[[Any], List[Any]],
        jobs: List[Any],
        describe: Callable[[Any], str],
    ) -> List[List[Any]]:
        """Run jobs on the bounded pool, keeping results in job order."""
        if self.settings.max_workers == 1:
            return [self._run_job(func, job, describe) for job in jobs]

        results: List[List[Any]] = [[] for _ in jobs]
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=self.settings.max_workers
        ) as executor:
            future_to_index = {
                executor.submit(self._run_job, func, job, describe): position
                for position, job in enumerate(jobs)
            }
            for future in concurrent.futures.as_completed(future_to_index):
                results[future_to_index[future]] = future.result()
        return results

    def _run_job(
        self, func: Callable[[Any], List[Any]], job: Any, describe: Callable[[Any], str]
    ) -> List[Any]:
        try:
            return func(job)
        except Exception as e:
            self.logger.error(f"❌ Unexpected failure processing {describe(job)}: {e}")
            return []

    def _resolve_source(self, source: Source) -> List[CloneLocation]:
        """Resolve one source to clone locations; failures skip the source."""
        if source.repository:
            url = f"https://{source.host}/{source.account}/{source.repository}.git"
            self.logger.debug(f"Source {source.raw_url} names a repository: {url}")
            return [CloneLocation(url=url, account=source.account)]

        dialect = self.resolver.resolve(source.host)
        if dialect is HostDialect.UNKNOWN:
            self.logger.warning(
                f"⚠️ Skipping source {source.raw_url}: unknown API for host {source.host}"
            )
            return []

        try:
            locations = self.enumerator.enumerate(dialect, source.host, source.account)
        except EnumerationError as e:
            self.logger.error(
                f"❌ Skipping source {source.raw_url}: failed to fetch repos for {source.account} on host {source.host}: {e}"
            )
            return []

        self.logger.info(
            f"Processing source: {source.raw_url} ({len(locations)} repos)"
        )
        return locations

    def _fetch_location(self, location: CloneLocation) -> List[CommitRecord]:
        """Fetch one repository's commits; failures count as zero commits."""
        try:
            commits = self.acquirer.fetch_commits(location)
        except AcquisitionError as e:
            self.logger.warning(f"⚠️ Skipping repository {location.url}: {e}")
            return []
        self.logger.debug(f"Found {len(commits)} commits in {location.url}")
        return commits

    def _build_report(
        self,
        subject: Subject,
        fetched: List[Tuple[CloneLocation, List[CommitRecord]]],
    ) -> SubjectReport:
        deduplicator = CommitDeduplicator()
        for location, commits in fetched:
            accepted = [
                commit
                for commit in commits
                if is_commit_from_subject(
                    commit, subject.name, location.account, self.settings.cutoff
                )
            ]
            self.logger.debug(
                f"{len(accepted)}/{len(commits)} commits in {location.url} attributed to {subject.name}"
            )
            deduplicator.extend(accepted)

        subject.commits = deduplicator.commits
        histogram = build_hour_histogram(subject.commits.values())
        estimate = estimate_sleep_window(histogram)

        if not subject.commits:
            self.logger.warning(f"No commits found for {subject.name}")
        else:
            self.logger.info(
                f"Total commits found for {subject.name}: {len(subject.commits)}"
            )
        return SubjectReport(subject=subject, histogram=histogram, estimate=estimate)

    def render_outputs(
        self, reports: List[SubjectReport], config_digest: str
    ) -> Dict[str, List[Path]]:
        """Print and write the requested outputs; returns written files."""
        generated: Dict[str, List[Path]] = {"scatter": [], "histogram": [], "snapshot": []}
        output_dir = self.settings.output_dir

        for report in reports:
            name = report.subject.name
            if not report.subject.commits:
                self.logger.info(f"No commits found for {name}. Skipping output.")
                continue

            if self.settings.show_stdout:
                print(f"Sleep histogram for {name}:")
                print(render_text_histogram(report.histogram))
                print()
                print(format_estimate(name, report.estimate))
                print()

            if self.settings.plot_scatter or self.settings.plot_histogram:
                output_dir.mkdir(parents=True, exist_ok=True)

            if self.settings.plot_scatter:
                path = output_dir / f"{safe_filename(name)}_commits_scatter.png"
                try:
                    generated["scatter"].append(plot_commits_scatter(report, path))
                    self.logger.info(f"Saved scatter plot to {path}")
                except (OSError, ValueError) as e:
                    self.logger.error(f"Failed to save scatter plot for {name}: {e}")

            if self.settings.plot_histogram:
                path = output_dir / f"{safe_filename(name)}_commits_histogram.png"
                try:
                    generated["histogram"].append(plot_commits_histogram(report, path))
                    self.logger.info(f"Saved histogram to {path}")
                except (OSError, ValueError) as e:
                    self.logger.error(f"Failed to save histogram for {name}: {e}")

            if self.settings.write_snapshot:
                try:
                    path = save_snapshot(report, output_dir, config_digest)
                    generated["snapshot"].append(path)
                    self.logger.info(f"Saved snapshot to {path}")
                except OSError as e:
                    self.logger.error(f"Failed to save snapshot for {name}: {e}")

        return generated


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Estimate sleep schedules from public commit timestamps",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --config subjects.yaml
  %(prog)s -u alice@github.com/alice,codeberg.org/alice --histogram
  %(prog)s --days 90 --scatter --write --output-dir ./out
        """,
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help=f"Subjects YAML file (default: {DEFAULT_CONFIG_FILE})",
    )
    parser.add_argument(
        "-u",
        "--user",
        help="Ad-hoc subject, e.g. name@source1,source2 (replaces config subjects)",
    )
    parser.add_argument(
        "--days", type=int, help="Only consider commits from the last N days"
    )

    # Output options
    parser.add_argument(
        "-o",
        "--stdout",
        dest="stdout",
        action="store_true",
        default=None,
        help="Print text histogram and sleep estimate (default)",
    )
    parser.add_argument(
        "--no-stdout",
        dest="stdout",
        action="store_false",
        help="Do not print text histogram and sleep estimate",
    )
    parser.add_argument(
        "-p", "--scatter", action="store_true", help="Save a scatter plot per subject"
    )
    parser.add_argument(
        "--histogram", action="store_true", help="Save a histogram chart per subject"
    )
    parser.add_argument(
        "-s", "--write", action="store_true", help="Write hour-count snapshots"
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        help=f"Directory for charts and snapshots (default: {DEFAULT_OUTPUT_DIR})",
    )

    # Behavioral options
    parser.add_argument("--max-workers", type=int, help="Concurrent network workers")
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Enable verbose logging"
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override log level from configuration",
    )
    parser.add_argument(
        "--validate-only", action="store_true", help="Validate configuration and exit"
    )

    return parser.parse_args(argv)


def apply_argument_overrides(config: dict[str, Any], args: argparse.Namespace) -> None:
    """Fold command line flags into the merged settings mapping."""
    settings = config["settings"]
    output = settings.setdefault("output", {})

    if args.days is not None:
        settings["lookback_days"] = args.days
    if args.max_workers is not None:
        settings.setdefault("performance", {})["max_workers"] = args.max_workers
    if args.stdout is not None:
        output["stdout"] = args.stdout
    if args.scatter:
        output["scatter"] = True
    if args.histogram:
        output["histogram"] = True
    if args.write:
        output["write"] = True
    if args.output_dir is not None:
        output["directory"] = str(args.output_dir)

    if args.log_level:
        settings.setdefault("logging", {})["level"] = args.log_level
    elif args.verbose:
        settings.setdefault("logging", {})["level"] = "DEBUG"


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_arguments(argv)

    # A missing default file is fine when the subject comes from -u
    config_path: Optional[Path] = args.config or Path(DEFAULT_CONFIG_FILE)
    if args.user and args.config is None and not config_path.exists():
        config_path = None

    try:
        config = load_configuration(config_path)
        apply_argument_overrides(config, args)
    except ConfigurationError as e:
        print(f"ERROR: Failed to load configuration: {e}", file=sys.stderr)
        return 1

    log_config = config["settings"].get("logging", {})
    logger = setup_logging(
        level=log_config.get("level", "INFO"),
        include_timestamps=log_config.get("include_timestamps", True),
    )

    try:
        settings = build_run_settings(config)
        if args.user:
            subjects = [build_subject_from_flag(args.user, logger)]
        else:
            subjects = build_subjects(config, logger)
    except ConfigurationError as e:
        logger.error(f"❌ Invalid configuration: {e}")
        return 1

    for subject in subjects:
        if not subject.sources:
            logger.warning(f"No sources found for {subject.name}. Skipping.")
    subjects = [s for s in subjects if s.sources]
    if not subjects:
        logger.error("❌ No subjects with resolvable sources found")
        return 1

    config_digest = compute_config_digest(config)
    logger.info(f"Commit Sleep-Schedule Estimator v{SCRIPT_VERSION}")
    logger.info(f"Configuration digest: {config_digest[:12]}...")
    logger.info(
        f"Analyzing {len(subjects)} subject(s), commits after {settings.cutoff.isoformat()}"
    )

    if args.validate_only:
        logger.info("Configuration validation successful")
        print(f"✅ Configuration valid: {len(subjects)} subject(s)")
        for subject in subjects:
            print(f"   - {subject.name}: {len(subject.sources)} source(s)")
        return 0

    with SleepScheduleReporter(settings, logger) as reporter:
        reports = reporter.analyze_subjects(subjects)
    reporter.render_outputs(reports, config_digest)

    summary = reporter.stats.format_console_output()
    if summary:
        print(summary)

    analyzed = sum(1 for r in reports if r.subject.commits)
    logger.info(f"Analysis complete: {analyzed}/{len(reports)} subjects with commits")
    return 0


if __name__ == "__main__":
    sys.exit(main())
