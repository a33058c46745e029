import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path

from .errors import ConfigError

# Upstream endpoints
WDQS_ENDPOINT = "https://query.wikidata.org/sparql"
API_ENDPOINT = "https://www.wikidata.org/w/api.php"
ENTITY_URI_PREFIX = "http://www.wikidata.org/entity/"
COMMONS_FILE_PATH_URL = "https://commons.wikimedia.org/wiki/Special:FilePath/{name}"

# Knowledge-graph classes used by the crawl queries
VIDEO_GAME_CLASS = "Q7889"
PLATFORM_CLASS = "Q8076"

# Paging and retry knobs
DEFAULT_PAGE_SIZE = 2000
MIN_PAGE_SIZE = 200  # Lower values make WDQS paging pathologically slow
WDQS_MIN_INTERVAL_MS = 250
WDQS_TIMEOUT = 60
API_TIMEOUT = 30
HTTP_MAX_RETRIES = 6
HTTP_BACKOFF_BASE_MS = 400
HTTP_BACKOFF_CAP_MS = 15000
RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})
ERROR_BODY_LIMIT = 500

# Adaptive slow window applied after Retry-After
SLOW_WINDOW_MIN_MS = 750
SLOW_WINDOW_MAX_MS = 10000
SLOW_WINDOW_RELAX_MS = 250

# Enrichment and normalization batching
API_MAX_IDS = 50  # wbgetentities hard limit for anonymous clients
ENRICH_BATCH_SIZE = 50
ENRICH_CONCURRENCY = 3
MAX_CONCURRENCY = 4
NORMALIZE_BATCH_SIZE = 200
JUNK_SCAN_BATCH_SIZE = 500

# Store conflict retries at the batch-write boundary
STORE_MAX_RETRIES = 4
STORE_BACKOFF_BASE_MS = 200
STORE_BACKOFF_CAP_MS = 3000

# Major platform selection
MAJOR_PLATFORM_TOP_N = 25
MAJOR_PLATFORM_MIN_SITELINKS = 8

# Wiki list extraction
WIKI_PROJECT_LIST_PREFIX = "WikiProject Video games/Lists/"
WIKI_PROJECT_FALLBACK_PREFIX = "WikiProject Video games/"
WIKI_PROJECT_NAMESPACE = 4
WIKI_LIST_EXTRACTOR = "wiki-project-lists-regex"

# ID validation patterns
QID_EXACT_PATTERN = re.compile(r"^Q\d+$")
QID_TEXT_PATTERN = re.compile(r"\bQ\d+\b")

DEFAULT_DB_PATH = Path("data/gamegraph.sqlite")
REGISTRY_PATH = Path(__file__).resolve().parent / "data" / "property_registry.json"
REGISTRY_SCHEMA_PATH = Path(__file__).resolve().parent / "data" / "property_registry.schema.json"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _read(environ, *names):
    for name in names:
        value = environ.get(name)
        if value is not None and value.strip():
            return value.strip()
    return None


def _read_int(environ, names, default, minimum=None, maximum=None):
    if isinstance(names, str):
        names = (names,)
    raw = _read(environ, *names)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{names[0]} must be an integer, got {raw!r}") from None
    if minimum is not None and value < minimum:
        raise ConfigError(f"{names[0]} must be >= {minimum}, got {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{names[0]} must be <= {maximum}, got {value}")
    return value


def _read_optional_int(environ, name):
    raw = _read(environ, name)
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")
    return value


def _read_bool(environ, name, default):
    raw = _read(environ, name)
    if raw is None:
        return default
    lowered = raw.lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")


def parse_qid_list(raw):
    """Split a comma separated QID list, upper-casing and validating each entry."""
    if not raw:
        return ()
    qids = []
    for part in raw.split(","):
        value = part.strip().upper()
        if not value:
            continue
        if not QID_EXACT_PATTERN.match(value):
            raise ConfigError(f"Invalid QID in list: {part.strip()!r}")
        if value not in qids:
            qids.append(value)
    return tuple(qids)


def validate_page_size(value):
    if value < MIN_PAGE_SIZE:
        raise ConfigError(f"Page size must be >= {MIN_PAGE_SIZE}, got {value}")
    return value


def validate_concurrency(value):
    if not 1 <= value <= MAX_CONCURRENCY:
        raise ConfigError(f"Concurrency must be between 1 and {MAX_CONCURRENCY}, got {value}")
    return value


def validate_batch_size(value):
    if value < 1:
        raise ConfigError(f"Batch size must be positive, got {value}")
    return value


@dataclass(frozen=True)
class Settings:
    user_agent: str
    db_path: Path = DEFAULT_DB_PATH
    wdqs_endpoint: str = WDQS_ENDPOINT
    api_endpoint: str = API_ENDPOINT
    page_size: int = DEFAULT_PAGE_SIZE
    wdqs_min_interval_ms: int = WDQS_MIN_INTERVAL_MS
    wdqs_timeout: int = WDQS_TIMEOUT
    api_timeout: int = API_TIMEOUT
    max_retries: int = HTTP_MAX_RETRIES
    backoff_base_ms: int = HTTP_BACKOFF_BASE_MS
    backoff_cap_ms: int = HTTP_BACKOFF_CAP_MS
    enrich_batch_size: int = ENRICH_BATCH_SIZE
    enrich_concurrency: int = ENRICH_CONCURRENCY
    enrich_max_games: int | None = None
    normalize_batch_size: int = NORMALIZE_BATCH_SIZE
    fetch_platform_limit: int | None = None
    major_top_n: int = MAJOR_PLATFORM_TOP_N
    major_min_sitelinks: int = MAJOR_PLATFORM_MIN_SITELINKS
    major_include_qids: tuple[str, ...] = field(default_factory=tuple)
    store_max_retries: int = STORE_MAX_RETRIES
    include_niche: bool = True
    log_level: str = "INFO"

    def __post_init__(self):
        if not self.user_agent or not self.user_agent.strip():
            raise ConfigError("A descriptive User-Agent is required (set WIKIDATA_USER_AGENT).")
        validate_page_size(self.page_size)
        validate_concurrency(self.enrich_concurrency)
        validate_batch_size(self.enrich_batch_size)
        validate_batch_size(self.normalize_batch_size)
        if self.enrich_batch_size > API_MAX_IDS:
            raise ConfigError(f"Enrich batch size must be <= {API_MAX_IDS}, got {self.enrich_batch_size}")

    @property
    def headers(self):
        return {"User-Agent": self.user_agent}

    def override(self, **changes):
        """Return a copy with the non-None changes applied and re-validated."""
        changes = {key: value for key, value in changes.items() if value is not None}
        if not changes:
            return self
        return replace(self, **changes)

    @classmethod
    def from_env(cls, environ=None):
        environ = os.environ if environ is None else environ
        user_agent = _read(environ, "WIKIDATA_USER_AGENT", "USER_AGENT")
        if user_agent is None:
            raise ConfigError("WIKIDATA_USER_AGENT (or USER_AGENT) must be set to a descriptive client identifier.")
        return cls(
            user_agent=user_agent,
            db_path=Path(_read(environ, "GAMEGRAPH_DB_PATH") or DEFAULT_DB_PATH),
            wdqs_endpoint=_read(environ, "WDQS_ENDPOINT") or WDQS_ENDPOINT,
            api_endpoint=_read(environ, "WIKIDATA_API_ENDPOINT") or API_ENDPOINT,
            page_size=_read_int(environ, ("WDQS_PAGE_SIZE", "PAGE_SIZE"), DEFAULT_PAGE_SIZE),
            wdqs_min_interval_ms=_read_int(environ, "WDQS_MIN_INTERVAL_MS", WDQS_MIN_INTERVAL_MS, minimum=0),
            wdqs_timeout=_read_int(environ, "WDQS_TIMEOUT_SECONDS", WDQS_TIMEOUT, minimum=1),
            api_timeout=_read_int(environ, "API_TIMEOUT_SECONDS", API_TIMEOUT, minimum=1),
            max_retries=_read_int(environ, "HTTP_MAX_RETRIES", HTTP_MAX_RETRIES, minimum=0),
            backoff_base_ms=_read_int(environ, "HTTP_BACKOFF_BASE_MS", HTTP_BACKOFF_BASE_MS, minimum=0),
            backoff_cap_ms=_read_int(environ, "HTTP_BACKOFF_CAP_MS", HTTP_BACKOFF_CAP_MS, minimum=0),
            enrich_batch_size=_read_int(environ, "ENRICH_BATCH_SIZE", ENRICH_BATCH_SIZE),
            enrich_concurrency=_read_int(environ, "ENRICH_CONCURRENCY", ENRICH_CONCURRENCY),
            enrich_max_games=_read_optional_int(environ, "ENRICH_MAX_GAMES"),
            normalize_batch_size=_read_int(environ, "NORMALIZE_BATCH_SIZE", NORMALIZE_BATCH_SIZE),
            fetch_platform_limit=_read_optional_int(environ, "FETCH_PLATFORM_LIMIT"),
            major_top_n=_read_int(environ, "MAJOR_PLATFORM_TOP_N", MAJOR_PLATFORM_TOP_N, minimum=1),
            major_min_sitelinks=_read_int(environ, "MAJOR_PLATFORM_MIN_SITELINKS", MAJOR_PLATFORM_MIN_SITELINKS, minimum=0),
            major_include_qids=parse_qid_list(_read(environ, "MAJOR_PLATFORM_INCLUDE_QIDS")),
            store_max_retries=_read_int(environ, "STORE_MAX_RETRIES", STORE_MAX_RETRIES, minimum=0),
            include_niche=_read_bool(environ, "INCLUDE_NICHE_PROPERTIES", True),
            log_level=(_read(environ, "LOG_LEVEL") or "INFO").upper(),
        )
