import json
import os
import re
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from urllib.parse import quote

from . import config


def is_qid(value):
    """Return True if the value looks like a Wikidata item id (Q*)."""
    if not isinstance(value, str):
        return False
    return bool(config.QID_EXACT_PATTERN.fullmatch(value.strip()))


def utc_now_iso():
    """Return a UTC timestamp string in ISO 8601 format (second precision)."""
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def chunked(iterable, size):
    """Yield list slices of fixed size (used for batched API lookups and IN clauses)."""
    batch = []
    for item in iterable:
        batch.append(item)
        if len(batch) == size:
            yield batch
            batch = []
    if batch:
        yield batch


def dedupe(values):
    """Return values in first-seen order without repeats."""
    seen = set()
    out = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        out.append(value)
    return out


def pick_label(entity, lang="en"):
    """Return preferred label for an entity, falling back to any language."""
    if not entity:
        return None
    labels = entity.get("labels") or {}
    if lang in labels:
        return labels[lang].get("value")
    if labels:
        first = next(iter(labels.values()))
        return first.get("value")
    return None


def pick_description(entity, lang="en"):
    """Return preferred description for an entity, falling back to any language."""
    if not entity:
        return None
    descriptions = entity.get("descriptions") or {}
    if lang in descriptions:
        return descriptions[lang].get("value")
    if descriptions:
        first = next(iter(descriptions.values()))
        return first.get("value")
    return None


def pick_aliases(entity, lang="en"):
    """Return alias strings for one language, trimmed and without repeats."""
    if not entity:
        return []
    aliases = (entity.get("aliases") or {}).get(lang) or []
    values = []
    seen = set()
    for alias in aliases:
        value = (alias.get("value") or "").strip()
        key = value.lower()
        if not value or key in seen:
            continue
        seen.add(key)
        values.append(value)
    return values


def sitelink_count(entity):
    if not entity:
        return 0
    return len(entity.get("sitelinks") or {})


def enwiki_link(entity):
    """Return (title, url) for the English Wikipedia sitelink, if any."""
    sitelink = ((entity or {}).get("sitelinks") or {}).get("enwiki")
    if not sitelink or not sitelink.get("title"):
        return None, None
    title = sitelink["title"]
    url = sitelink.get("url") or "https://en.wikipedia.org/wiki/" + quote(title.replace(" ", "_"))
    return title, url


def commons_file_url(filename):
    """Build a Special:FilePath URL for a Commons file name."""
    if not filename:
        return None
    name = filename.strip().replace(" ", "_")
    return config.COMMONS_FILE_PATH_URL.format(name=quote(name))


def slugify(text, max_length=120):
    if not text:
        return None
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    slug = slug[:max_length].strip("-")
    return slug or None


def qid_from_entity_uri(value):
    """Return the QID at the end of an entity URI, or None."""
    if not isinstance(value, str):
        return None
    match = re.search(r"/entity/(Q\d+)$", value.strip())
    return match.group(1) if match else None


def _json_default(obj):
    """JSON serializer fallback for Decimal and Path."""
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, Path):
        return str(obj)
    return str(obj)


def read_json(path):
    """Read JSON from disk and return the decoded payload."""
    with open(Path(path), "r", encoding="utf-8") as fh:
        return json.load(fh)


def write_json_atomic(path, payload):
    """Persist JSON via a temp file and atomic rename."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_suffix(path.suffix + ".tmp")
    with open(temp_path, "w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2, default=_json_default)
    os.replace(temp_path, path)


def dumps_compact(payload):
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"), default=_json_default)


def percent(part, total):
    if not total:
        return 0.0
    return round(100.0 * part / total, 1)
