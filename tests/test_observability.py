"""
Tests for structured logging, the error registry, the error handler and
request ID injection.
"""

import json
from unittest.mock import MagicMock, patch

import pytest
import yaml
from fastapi.testclient import TestClient

from repartilo import __version__
from repartilo.core.errors import (
    CODE_PATTERN,
    CapacityExceeded,
    LimitExceeded,
    NetworkError,
    RepartiloError,
)
from repartilo.core.errors.registry import ErrorRegistry, RegistryValidationError, VALID_DOMAINS
from repartilo.core.structured_logging import SERVICE_NAME, _inject_context, request_id_var, user_id_var
from repartilo.main import app


def _entry(**overrides):
    entry = {
        "code": "RPT-HIS-009", "title": "t", "severity": "INFO", "retryable": False,
        "user_action_required": False, "http_status": 400, "safe_message": "m",
    }
    entry.update(overrides)
    return entry


def _write_registry(tmp_path, *extra):
    """A registry file holding the required quota codes plus *extra* entries."""
    quota = [_entry(code=code) for code in LimitExceeded.CODES.values()]
    path = tmp_path / "registry.yaml"
    path.write_text(yaml.safe_dump({"schema_version": 2, "errors": quota + list(extra)}))
    return str(path)


@pytest.fixture
def registry():
    reg = ErrorRegistry()
    reg.load()
    return reg


# ═══════════════════════════════════════════════════════════════════════
# 1. Error Registry
# ═══════════════════════════════════════════════════════════════════════

class TestErrorRegistry:
    def test_load_real_registry(self, registry):
        assert len(registry) == 11
        assert registry.schema_version == 2

    def test_all_domains_covered(self, registry):
        assert registry.domains() == VALID_DOMAINS

    def test_every_error_class_is_registered(self, registry):
        for code in [*LimitExceeded.CODES.values(), "RPT-UPL-001", "RPT-NET-001", "RPT-HIS-001",
                     "RPT-HIS-002", "RPT-WFL-001", "RPT-BIL-001", "RPT-USR-001"]:
            assert registry.lookup(code).code == code

    def test_quota_statuses(self, registry):
        assert registry.lookup("RPT-QTA-001").http_status == 403
        assert registry.lookup("RPT-QTA-003").http_status == 402

    def test_lookup_unknown_raises(self, registry):
        with pytest.raises(KeyError):
            registry.lookup("RPT-UPL-999")

    def test_minimal_registry_loads(self, tmp_path):
        reg = ErrorRegistry()
        reg.load(_write_registry(tmp_path, _entry()))
        assert reg.lookup("RPT-HIS-009").domain == "HIS"

    def test_unknown_domain_rejected(self, tmp_path):
        with pytest.raises(RegistryValidationError, match="unknown domain"):
            ErrorRegistry().load(_write_registry(tmp_path, _entry(code="RPT-XYZ-001")))

    def test_unknown_severity_rejected(self, tmp_path):
        with pytest.raises(RegistryValidationError, match="severity"):
            ErrorRegistry().load(_write_registry(tmp_path, _entry(severity="LOUD")))

    def test_template_with_private_field_rejected(self, tmp_path):
        bad = _entry(message="Failed with {status_code}", public_context=["count"])
        with pytest.raises(RegistryValidationError, match="non-public"):
            ErrorRegistry().load(_write_registry(tmp_path, bad))

    def test_missing_quota_code_rejected(self, tmp_path):
        path = tmp_path / "registry.yaml"
        path.write_text(yaml.safe_dump({"schema_version": 2, "errors": [_entry(code="RPT-QTA-001")]}))
        with pytest.raises(RegistryValidationError, match="RPT-QTA-003"):
            ErrorRegistry().load(str(path))

    def test_duplicate_code_rejected(self, tmp_path):
        with pytest.raises(RegistryValidationError, match="Duplicate"):
            ErrorRegistry().load(_write_registry(tmp_path, _entry(), _entry()))


class TestErrorEntry:
    def test_quota_message_shows_usage(self, registry):
        entry = registry.lookup("RPT-QTA-003")
        exc = LimitExceeded("monthly_limit", current_value=10, limit_value=10)
        assert entry.render_message(exc.context) == (
            "You have used 10 of 10 optimizations included in your plan this month."
        )

    def test_missing_values_fall_back_to_safe_message(self, registry):
        entry = registry.lookup("RPT-QTA-001")
        assert entry.render_message(LimitExceeded("vehicle_limit").context) == entry.safe_message

    def test_history_full_message(self, registry):
        exc = CapacityExceeded(context={"count": 100, "max": 100})
        body = registry.lookup(exc.code).to_body(exc.context)
        assert body["message"] == "You have 100 saved optimizations, the maximum is 100."
        assert body["context"] == {"count": 100, "max": 100}

    def test_private_context_not_in_body(self, registry):
        exc = NetworkError("upstream said no", status_code=503)
        body = registry.lookup(exc.code).to_body(exc.context)
        assert "context" not in body
        assert "503" not in json.dumps(body)
        assert body["remediation"] == ["Retry the operation."]


class TestErrors:
    def test_invalid_code_raises(self):
        with pytest.raises(ValueError, match="Invalid error code format"):
            RepartiloError("BAD")

    def test_default_codes(self):
        assert CapacityExceeded().code == "RPT-HIS-001"
        assert NetworkError("x", status_code=503).context == {"status_code": 503}
        assert all(CODE_PATTERN.match(code) for code in LimitExceeded.CODES.values())

    def test_limit_from_code(self):
        assert LimitExceeded.from_code("RPT-QTA-002").reason == "stop_limit"
        rebuilt = LimitExceeded.from_code("RPT-QTA-003", current_value=10, limit_value=10)
        assert rebuilt.context == {"reason": "monthly_limit", "current": 10, "limit": 10}
        with pytest.raises(ValueError):
            LimitExceeded.from_code("RPT-HIS-001")

    def test_non_blocking_reason_rejected(self):
        with pytest.raises(ValueError):
            LimitExceeded("none")


# ═══════════════════════════════════════════════════════════════════════
# 2. Error handler
# ═══════════════════════════════════════════════════════════════════════

class TestErrorHandler:
    @pytest.mark.asyncio
    async def test_known_code_returns_structured_response(self):
        from repartilo.core.errors.middleware import repartilo_error_handler

        registry = ErrorRegistry()
        registry.load()
        with patch("repartilo.core.errors.middleware.error_registry", registry):
            exc = LimitExceeded("monthly_limit", current_value=10, limit_value=10, detail="internal detail")
            response = await repartilo_error_handler(MagicMock(), exc)

        assert response.status_code == 402
        body = json.loads(response.body)
        assert body["error"]["code"] == "RPT-QTA-003"
        assert body["error"]["context"] == {"reason": "monthly_limit", "current": 10, "limit": 10}
        assert "internal detail" not in json.dumps(body)
        assert body["error"]["message"].startswith("You have used 10 of 10")

    @pytest.mark.asyncio
    async def test_internal_context_not_returned(self, registry):
        from repartilo.core.errors.middleware import repartilo_error_handler

        with patch("repartilo.core.errors.middleware.error_registry", registry):
            exc = NetworkError("ledger timed out", status_code=504)
            response = await repartilo_error_handler(MagicMock(), exc)

        assert response.status_code == 503
        body = json.loads(response.body)
        assert "context" not in body["error"]
        assert "ledger timed out" not in json.dumps(body)

    @pytest.mark.asyncio
    async def test_unknown_code_returns_500(self):
        from repartilo.core.errors.middleware import repartilo_error_handler

        with patch("repartilo.core.errors.middleware.error_registry", ErrorRegistry()):
            response = await repartilo_error_handler(MagicMock(), RepartiloError("RPT-UPL-099"))
        assert response.status_code == 500


# ═══════════════════════════════════════════════════════════════════════
# 3. Correlation context
# ═══════════════════════════════════════════════════════════════════════

class TestCorrelationContext:
    def test_inject_context_with_ids(self):
        t1 = request_id_var.set("req-123")
        t2 = user_id_var.set("u1")
        try:
            result = _inject_context("test", "info", {})
            assert result["request_id"] == "req-123"
            assert result["user_id"] == "u1"
            assert result["service"] == SERVICE_NAME
            assert result["version"] == __version__
        finally:
            request_id_var.reset(t1)
            user_id_var.reset(t2)

    def test_inject_context_without_ids(self):
        result = _inject_context("test", "info", {})
        assert "request_id" not in result
        assert result["service"] == SERVICE_NAME

    def test_request_id_echoed(self):
        client = TestClient(app)
        resp = client.get("/", headers={"X-Request-Id": "abc"})
        assert resp.headers["x-request-id"] == "abc"
        assert client.get("/").headers["x-request-id"]
