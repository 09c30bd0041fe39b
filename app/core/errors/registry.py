"""
Error registry
==============

registry.yaml is the single source of truth for how an error kind looks
from the outside: public API code, HTTP status, log severity and the
message a client is allowed to see. The file is validated as a whole at
startup; a malformed registry stops the process instead of surfacing as a
wrong status code at request time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml

from app.core.errors import CODE_PATTERN

logger = logging.getLogger(__name__)

REGISTRY_PATH = Path(__file__).with_name("registry.yaml")

VALID_DOMAINS = frozenset({"API", "AUTH", "SESS", "USE", "BILL", "PRX", "SYS"})
VALID_SEVERITIES = frozenset({"DEBUG", "INFO", "WARN", "ERROR", "CRITICAL"})
_FIELDS = ("code", "domain", "api_code", "title", "severity", "retryable", "http_status", "safe_message")


@dataclass(frozen=True)
class ErrorEntry:
    code: str
    domain: str
    api_code: str
    title: str
    severity: str
    retryable: bool
    http_status: int
    safe_message: str


class RegistryValidationError(Exception):
    """registry.yaml is structurally invalid."""


def _parse_entry(position: int, raw: Any) -> ErrorEntry:
    if not isinstance(raw, Mapping):
        raise RegistryValidationError(f"entry #{position} is not a mapping")

    missing = [f for f in _FIELDS if f not in raw]
    if missing:
        raise RegistryValidationError(f"entry #{position} ({raw.get('code', '?')}) lacks {', '.join(missing)}")

    code = raw["code"]
    if not CODE_PATTERN.match(code):
        raise RegistryValidationError(f"malformed code {code!r}")
    prefix = code.split("-")[1]
    if raw["domain"] != prefix:
        raise RegistryValidationError(f"{code}: domain {raw['domain']!r} disagrees with prefix {prefix!r}")
    if raw["domain"] not in VALID_DOMAINS:
        raise RegistryValidationError(f"{code}: unknown domain {raw['domain']!r}")
    if raw["severity"] not in VALID_SEVERITIES:
        raise RegistryValidationError(f"{code}: unknown severity {raw['severity']!r}")

    status = int(raw["http_status"])
    if not 400 <= status <= 599:
        raise RegistryValidationError(f"{code}: http_status {status} is not an error status")

    return ErrorEntry(
        code=code,
        domain=raw["domain"],
        api_code=str(raw["api_code"]),
        title=str(raw["title"]),
        severity=raw["severity"],
        retryable=bool(raw["retryable"]),
        http_status=status,
        safe_message=str(raw["safe_message"]),
    )


class ErrorRegistry:
    """Code → ErrorEntry lookup, populated by load()."""

    def __init__(self) -> None:
        self._entries: Dict[str, ErrorEntry] = {}
        self.schema_version = 0

    def load(self, path: str | Path | None = None) -> None:
        source = Path(path) if path else REGISTRY_PATH
        document = yaml.safe_load(source.read_text(encoding="utf-8")) or {}

        raw_entries = document.get("errors", [])
        if not isinstance(raw_entries, list):
            raise RegistryValidationError("'errors' must be a list")

        entries: Dict[str, ErrorEntry] = {}
        for position, raw in enumerate(raw_entries):
            entry = _parse_entry(position, raw)
            if entry.code in entries:
                raise RegistryValidationError(f"duplicate code {entry.code}")
            entries[entry.code] = entry

        self._entries = entries
        self.schema_version = int(document.get("schema_version", 0))
        logger.info(
            "error_registry_loaded",
            extra={"registry.count": len(entries), "registry.schema_version": self.schema_version},
        )

    def get(self, code: str) -> ErrorEntry | None:
        return self._entries.get(code)

    def all_codes(self) -> list[str]:
        return sorted(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


error_registry = ErrorRegistry()
