from __future__ import annotations

from typing import Any, Optional


class GamegraphError(Exception):
    """Base class for pipeline errors surfaced to stages and the CLI."""


class ConfigError(GamegraphError):
    """Raised when settings are missing or fail validation."""


class FetchError(GamegraphError):
    """A permanent upstream failure, or a retryable one after retries ran out."""

    def __init__(self, message: str, *, url: str, status: Optional[int] = None, body: str = "") -> None:
        super().__init__(message)
        self.url = url
        self.status = status
        self.body = body

    def __str__(self) -> str:
        status = self.status if self.status is not None else "transport"
        base = f"{self.args[0]} [{status}] {self.url}"
        if self.body:
            return f"{base}: {self.body}"
        return base


class EntityMissingError(GamegraphError):
    """The upstream record does not exist (deleted entity or missing page)."""

    def __init__(self, identity: str) -> None:
        super().__init__(f"Upstream record missing: {identity}")
        self.identity = identity


class RegistryError(GamegraphError):
    def __init__(self, code: str, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class StoreConflictError(GamegraphError):
    """Store conflicts persisted after the batch-write retries were exhausted."""
