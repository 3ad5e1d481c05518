"""
Error code system.

RepartiloError is the base exception for all structured errors.
Raise it (or one of the typed subclasses below) with an error code from the
registry, and the error middleware will produce a structured JSON response.

Usage:
    from repartilo.core.errors import LimitExceeded
    raise LimitExceeded("monthly_limit", current_value=100, limit_value=100)
"""

from __future__ import annotations

import re

CODE_PATTERN = re.compile(r"^RPT-[A-Z]{2,6}-\d{3}$")


class RepartiloError(Exception):
    """Structured application error tied to the error registry.

    Args:
        code: Registry error code, e.g. "RPT-QTA-003".
        detail: Internal-only detail message (never exposed to users).
        context: Arbitrary key-value context for structured logging.
    """

    default_code: str = ""

    def __init__(
        self,
        code: str | None = None,
        detail: str | None = None,
        context: dict | None = None,
    ) -> None:
        code = code or self.default_code
        if not CODE_PATTERN.match(code):
            raise ValueError(f"Invalid error code format: {code!r}")
        self.code = code
        self.detail = detail
        self.context = context or {}
        super().__init__(f"{code}: {detail}" if detail else code)


class ValidationError(RepartiloError):
    """Malformed upload (missing vehicles or deliveries)."""

    default_code = "RPT-UPL-001"


class LimitExceeded(RepartiloError):
    """A quota dimension blocks the requested operation.

    ``reason`` is the QuotaReason value ("vehicle_limit", "stop_limit",
    "monthly_limit", "overage_cap_exceeded").
    """

    CODES = {
        "vehicle_limit": "RPT-QTA-001",
        "stop_limit": "RPT-QTA-002",
        "monthly_limit": "RPT-QTA-003",
        "overage_cap_exceeded": "RPT-QTA-004",
    }

    def __init__(
        self,
        reason: str,
        current_value: int | None = None,
        limit_value: int | None = None,
        detail: str | None = None,
    ) -> None:
        reason = getattr(reason, "value", reason)
        if reason not in self.CODES:
            raise ValueError(f"Not a blocking quota reason: {reason!r}")
        self.reason = reason
        self.current_value = current_value
        self.limit_value = limit_value
        super().__init__(
            self.CODES[reason],
            detail=detail or f"{reason}: {current_value} exceeds {limit_value}",
            context={"reason": reason, "current": current_value, "limit": limit_value},
        )

    @classmethod
    def from_code(
        cls,
        code: str,
        detail: str | None = None,
        current_value: int | None = None,
        limit_value: int | None = None,
    ) -> "LimitExceeded":
        """Rebuild the error from a registry code, e.g. one returned by the ledger API."""
        for reason, reason_code in cls.CODES.items():
            if reason_code == code:
                return cls(reason, current_value=current_value, limit_value=limit_value, detail=detail)
        raise ValueError(f"Not a quota error code: {code!r}")


class NetworkError(RepartiloError):
    """Transport failure or 5xx talking to the ledger or routing service."""

    default_code = "RPT-NET-001"

    def __init__(self, detail: str | None = None, status_code: int = 0) -> None:
        self.status_code = status_code
        super().__init__(detail=detail, context={"status_code": status_code})


class CapacityExceeded(RepartiloError):
    """Saved optimization history is full for this user."""

    default_code = "RPT-HIS-001"


class RecordNotFound(RepartiloError):
    default_code = "RPT-HIS-002"


class InvalidTransition(RepartiloError):
    """Workflow action not allowed from the current step."""

    default_code = "RPT-WFL-001"


class WebhookRejected(RepartiloError):
    default_code = "RPT-BIL-001"


class MissingUser(RepartiloError):
    """Request carried no user identity."""

    default_code = "RPT-USR-001"
