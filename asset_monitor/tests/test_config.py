"""Tests for settings loading and JSON logging."""

from __future__ import annotations

import io
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest
from botocore.exceptions import ClientError
from pydantic import ValidationError

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


from asset_monitor.config import MonitorSettings
from asset_monitor.errors import MalformedInputError, TransportError, is_retryable
from asset_monitor.logs import JSONFormatter, fields


def test_settings_read_prefixed_environment(monkeypatch) -> None:
    monkeypatch.setenv("ASSET_MONITOR_FUNCTION_NAME", "monitor_buckets")
    monkeypatch.setenv("ASSET_MONITOR_RETRIES_NUMBER", "4")
    monkeypatch.setenv("ASSET_MONITOR_DEPLOYMENT_TIME", "2024-01-01T00:00:00Z")

    settings = MonitorSettings.from_environment()

    assert settings.function_name == "monitor_buckets"
    assert settings.retries_number == 4
    assert settings.deployment_time == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert settings.compliance_status_topic == "ram-complianceStatus"


def test_settings_validate_values(monkeypatch) -> None:
    monkeypatch.setenv("ASSET_MONITOR_FAN_OUT_WORKERS", "0")

    with pytest.raises(ValidationError):
        MonitorSettings.from_environment()


def test_json_formatter_merges_fields() -> None:
    """Structured fields are flattened into one JSON line."""

    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(JSONFormatter())
    logger = logging.getLogger("asset_monitor.tests.formatter")
    logger.addHandler(handler)
    logger.propagate = False
    try:
        logger.warning("noretry", extra=fields({"environment": "test"}, asset_name="//a", empty=""))
    finally:
        logger.removeHandler(handler)

    entry = json.loads(stream.getvalue())
    assert entry["severity"] == "WARNING"
    assert entry["message"] == "noretry"
    assert entry["environment"] == "test"
    assert entry["asset_name"] == "//a"
    assert "empty" not in entry


def test_error_classification() -> None:
    assert is_retryable(TransportError("x"))
    assert not is_retryable(MalformedInputError("x"))
    assert is_retryable(ClientError({"Error": {"Code": "Throttling"}}, "Publish"))
    assert not is_retryable(KeyError("x"))
