"""
Error registry
==============

Loads registry.yaml: one entry per RPT code with its HTTP status, the title
and message shown in the dashboard, remediation steps, and the context
fields the client is allowed to see.

MESSAGES:
    An entry may carry a ``message`` template, e.g.
    "You have used {current} of {limit} optimizations included this month."
    It is filled from the error's public context. If a field is missing the
    static ``safe_message`` is returned instead.

PUBLIC CONTEXT:
    Only the keys listed in ``public_context`` leave the server. Everything
    else in ``RepartiloError.context`` is for the logs.

VALIDATION (at load):
    - code format and a known domain (the domain is the code's middle part)
    - severity is a logging level name
    - templates only reference public context keys
    - every quota reason LimitExceeded can raise has an entry
"""

from __future__ import annotations

import logging
import os
import string
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set, Tuple

import yaml

from repartilo.core.errors import CODE_PATTERN, LimitExceeded

logger = logging.getLogger(__name__)

DEFAULT_PATH = os.path.join(os.path.dirname(__file__), "registry.yaml")

VALID_DOMAINS = {"UPL", "QTA", "NET", "HIS", "WFL", "BIL", "USR"}
SEVERITY_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}
REQUIRED_FIELDS = {"code", "title", "severity", "retryable", "user_action_required", "http_status", "safe_message"}


@dataclass(frozen=True)
class ErrorEntry:
    code: str
    title: str
    severity: str
    retryable: bool
    user_action_required: bool
    http_status: int
    safe_message: str
    message_template: Optional[str] = None
    public_context: Tuple[str, ...] = ()
    remediation: Tuple[str, ...] = ()

    @property
    def domain(self) -> str:
        return self.code.split("-")[1]

    @property
    def log_level(self) -> int:
        return SEVERITY_LEVELS[self.severity]

    def visible_context(self, context: Dict[str, Any]) -> Dict[str, Any]:
        return {key: context[key] for key in self.public_context if context.get(key) is not None}

    def render_message(self, context: Dict[str, Any]) -> str:
        if not self.message_template:
            return self.safe_message
        try:
            return self.message_template.format(**self.visible_context(context))
        except KeyError:
            return self.safe_message

    def to_body(self, context: Dict[str, Any]) -> Dict[str, Any]:
        """Client-facing error body for an error raised with *context*."""
        body: Dict[str, Any] = {
            "code": self.code,
            "title": self.title,
            "message": self.render_message(context),
            "retryable": self.retryable,
            "user_action_required": self.user_action_required,
            "remediation": list(self.remediation),
        }
        visible = self.visible_context(context)
        if visible:
            body["context"] = visible
        return body


class RegistryValidationError(Exception):
    """Raised when registry.yaml has structural errors."""


def _template_fields(template: str) -> Set[str]:
    return {name for _, name, _, _ in string.Formatter().parse(template) if name}


def _parse_entry(idx: int, raw: Any) -> ErrorEntry:
    if not isinstance(raw, dict):
        raise RegistryValidationError(f"Entry {idx}: expected a mapping")
    missing = REQUIRED_FIELDS - set(raw)
    if missing:
        raise RegistryValidationError(f"Entry {idx} ({raw.get('code', '?')}): missing fields {sorted(missing)}")

    code = raw["code"]
    if not CODE_PATTERN.match(code):
        raise RegistryValidationError(f"Invalid code format: {code!r}")
    if code.split("-")[1] not in VALID_DOMAINS:
        raise RegistryValidationError(f"{code}: unknown domain")
    if raw["severity"] not in SEVERITY_LEVELS:
        raise RegistryValidationError(f"{code}: unknown severity {raw['severity']!r}")

    public_context = tuple(raw.get("public_context") or ())
    template = raw.get("message")
    if template:
        unknown = _template_fields(template) - set(public_context)
        if unknown:
            raise RegistryValidationError(f"{code}: message uses non-public fields {sorted(unknown)}")

    return ErrorEntry(
        code=code,
        title=raw["title"],
        severity=raw["severity"],
        retryable=bool(raw["retryable"]),
        user_action_required=bool(raw["user_action_required"]),
        http_status=int(raw["http_status"]),
        safe_message=raw["safe_message"],
        message_template=template,
        public_context=public_context,
        remediation=tuple(raw.get("remediation") or ()),
    )


class ErrorRegistry:
    """Code → ErrorEntry lookup, loaded once from YAML."""

    def __init__(self) -> None:
        self._entries: Dict[str, ErrorEntry] = {}
        self.schema_version: int = 0

    def load(self, path: Optional[str] = None) -> None:
        with open(path or DEFAULT_PATH, "r") as f:
            data = yaml.safe_load(f) or {}

        errors_list = data.get("errors", [])
        if not isinstance(errors_list, list):
            raise RegistryValidationError("'errors' must be a list")

        entries: Dict[str, ErrorEntry] = {}
        for idx, raw in enumerate(errors_list):
            entry = _parse_entry(idx, raw)
            if entry.code in entries:
                raise RegistryValidationError(f"Duplicate code: {entry.code}")
            entries[entry.code] = entry

        unregistered = sorted(set(LimitExceeded.CODES.values()) - set(entries))
        if unregistered:
            raise RegistryValidationError(f"Quota codes missing from registry: {unregistered}")

        self._entries = entries
        self.schema_version = data.get("schema_version", 0)
        logger.info("error_registry_loaded", extra={"count": len(entries), "schema_version": self.schema_version})

    def get(self, code: str) -> Optional[ErrorEntry]:
        return self._entries.get(code)

    def lookup(self, code: str) -> ErrorEntry:
        """Lookup by code, raising KeyError if not found."""
        entry = self._entries.get(code)
        if entry is None:
            raise KeyError(f"Unknown error code: {code!r}")
        return entry

    def domains(self) -> Set[str]:
        return {entry.domain for entry in self._entries.values()}

    def __len__(self) -> int:
        return len(self._entries)


error_registry = ErrorRegistry()
