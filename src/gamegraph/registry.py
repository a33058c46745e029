from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Optional

import jsonschema

from . import config
from .errors import RegistryError

CORE = "core"
COMMON = "common"
NICHE = "niche"
IGNORED = "ignored"

GAME = "game"
PLATFORM = "platform"

# Cardinality: "one" keeps a single best-ranked value, "many" keeps every statement
ONE = "one"

# Targets whose rows need a role/kind discriminator
KIND_REQUIRED_TARGETS = {
    "game_tag",
    "game_company",
    "game_relation",
    "website",
    "external_game",
    "game_image",
    "game_video",
    "game_age_rating",
    "game_score",
}
PLATFORM_TARGETS = {"platform_controller", "platform_family"}


@dataclass(frozen=True)
class RegistryEntry:
    property_id: str
    label: str
    status: str
    subject: str
    target: str
    cardinality: str
    value_type: str
    source: str
    kind: Optional[str] = None
    url_template: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status != IGNORED and self.target != "none"

    @property
    def single_valued(self) -> bool:
        return self.cardinality == ONE

    def format_url(self, value: str) -> Optional[str]:
        if not self.url_template:
            return None
        return self.url_template.replace("{value}", value)


@dataclass(frozen=True)
class PropertyRegistry:
    version: int
    entries: tuple[RegistryEntry, ...]

    def get(self, property_id: str) -> Optional[RegistryEntry]:
        for entry in self.entries:
            if entry.property_id == property_id:
                return entry
        return None

    def active(self, subject: str = GAME, include_niche: bool = True) -> tuple[RegistryEntry, ...]:
        """Entries the parser should hydrate for one subject kind."""
        selected = []
        for entry in self.entries:
            if entry.subject != subject or not entry.is_active:
                continue
            if not include_niche and entry.status == NICHE:
                continue
            selected.append(entry)
        return tuple(selected)

    def excluded(self, subject: str = GAME, include_niche: bool = True) -> tuple[RegistryEntry, ...]:
        active = set(self.active(subject, include_niche))
        return tuple(entry for entry in self.entries if entry.subject == subject and entry not in active)


def _validate_schema(payload: dict[str, Any], schema: dict[str, Any]) -> None:
    validator = jsonschema.Draft202012Validator(schema)
    errors = sorted(validator.iter_errors(payload), key=lambda e: len(list(e.absolute_path)))
    if errors:
        error = errors[0]
        details = {
            "path": list(error.absolute_path),
            "schema_path": list(error.absolute_schema_path),
            "message": error.message,
        }
        raise RegistryError("SCHEMA_VIOLATION", "Property registry failed schema validation.", details)


def build_registry(payload: dict[str, Any], schema: dict[str, Any]) -> PropertyRegistry:
    _validate_schema(payload, schema)
    entries = []
    seen: set[str] = set()
    for raw in payload["entries"]:
        property_id = raw["property_id"]
        if property_id in seen:
            raise RegistryError("DUPLICATE_PROPERTY", f"Property {property_id} is mapped more than once.", {"property_id": property_id})
        seen.add(property_id)
        target = raw["target"]
        if target in KIND_REQUIRED_TARGETS and not raw.get("kind"):
            raise RegistryError("MISSING_KIND", f"Property {property_id} targets {target} without a kind.", {"property_id": property_id})
        if (target in PLATFORM_TARGETS) != (raw["subject"] == PLATFORM) and target != "none":
            raise RegistryError(
                "SUBJECT_MISMATCH",
                f"Property {property_id} target {target} does not apply to subject {raw['subject']}.",
                {"property_id": property_id},
            )
        entries.append(
            RegistryEntry(
                property_id=property_id,
                label=raw["label"],
                status=raw["status"],
                subject=raw["subject"],
                target=target,
                cardinality=raw["cardinality"],
                value_type=raw["value_type"],
                source=raw.get("source") or f"wikidata:{property_id}",
                kind=raw.get("kind"),
                url_template=raw.get("url_template"),
            )
        )
    return PropertyRegistry(version=payload["version"], entries=tuple(entries))


def load_registry(path: Optional[Path] = None, schema_path: Optional[Path] = None) -> PropertyRegistry:
    path = Path(path or config.REGISTRY_PATH)
    schema_path = Path(schema_path or config.REGISTRY_SCHEMA_PATH)
    with open(schema_path, "r", encoding="utf-8") as handle:
        schema = json.load(handle)
    try:
        with open(path, "r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except json.JSONDecodeError as exc:
        details = {"message": exc.msg, "line": exc.lineno, "column": exc.colno}
        raise RegistryError("INVALID_JSON", f"Property registry {path} is not valid JSON.", details) from exc
    return build_registry(payload, schema)


def sources_for(entries: Iterable[RegistryEntry]) -> tuple[str, ...]:
    return tuple(sorted({entry.source for entry in entries}))
