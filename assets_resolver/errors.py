"""Centralized error codes and helper utilities."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

__all__ = [
    "NOT_FOUND",
    "INVALID_REFERENCE",
    "UPSTREAM_ERROR",
    "CANCELLED",
    "TIMEOUT",
    "CACHE_ERROR",
    "CONFIG_ERROR",
    "INTERNAL_ERROR",
    "INTERRUPTION_CODES",
    "AssetsResolverError",
    "error_payload",
]

NOT_FOUND = "NOT_FOUND"
INVALID_REFERENCE = "INVALID_REFERENCE"
UPSTREAM_ERROR = "UPSTREAM_ERROR"
CANCELLED = "CANCELLED"
TIMEOUT = "TIMEOUT"
CACHE_ERROR = "CACHE_ERROR"
CONFIG_ERROR = "CONFIG_ERROR"
INTERNAL_ERROR = "INTERNAL_ERROR"

# Codes that abort an operation outright instead of being treated as a miss.
INTERRUPTION_CODES = frozenset({CANCELLED, TIMEOUT})


@dataclass(slots=True)
class AssetsResolverError(Exception):
    """Domain-specific exception carrying an error code and message."""

    code: str
    message: str
    details: Mapping[str, Any] | None = None

    def __str__(self) -> str:  # pragma: no cover - delegation to message
        return self.message

    @property
    def interrupted(self) -> bool:
        return self.code in INTERRUPTION_CODES

    def to_dict(self) -> dict[str, Any]:
        return error_payload(self.code, self.message, details=self.details)


def error_payload(code: str, message: str, *, details: Mapping[str, Any] | None = None) -> dict[str, Any]:
    """Build a structured error payload used in tool responses."""

    payload: dict[str, Any] = {
        "code": code,
        "message": message,
    }
    if details:
        payload["details"] = dict(details)
    return payload
