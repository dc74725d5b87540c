"""Runtime settings for the monitor services."""
from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field

_PREFIX = "ASSET_MONITOR_"


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(f"{_PREFIX}{name}", default)


class MonitorSettings(BaseModel):
    """Settings shared by the compliance monitor and its helper services.

    Field defaults are suitable for local replays; deployed functions load
    them with :meth:`from_environment`.
    """

    microservice_name: str = Field(default="monitor")
    instance_name: str = Field(default="monitor_local")
    environment: str = Field(default="dev")

    # Identity reported in compliance status and violation records
    function_name: str = Field(default="monitor_local")
    project_id: str = Field(default="")
    deployment_time: datetime = Field(
        default_factory=lambda: datetime(1970, 1, 1, tzinfo=timezone.utc)
    )

    compliance_status_topic: str = Field(default="ram-complianceStatus")
    violation_topic: str = Field(default="ram-violation")
    group_members_topic: str = Field(default="gci-groupMembers")
    group_settings_topic: str = Field(default="gci-groupSettings")
    groups_topic_prefix: str = Field(default="gci-groups")

    cache_table: str = Field(default="ram-assets")
    owner_label_key: str = Field(default="owner")
    violation_resolver_label_key: str = Field(default="resolver")
    identity_store_id: str = Field(default="")

    opa_folder: str = Field(default="./opa")
    writable_opa_folder: str = Field(default="/tmp/opa")
    rego_modules_folder: str = Field(default="./opa/modules")
    opa_query: str = Field(default="data.validator.gcp.lib.audit")
    opa_binary: str = Field(default="opa")
    opa_timeout_seconds: float = Field(default=60.0, gt=0)

    retry_timeout_seconds: int = Field(default=600, ge=0)
    retries_number: int = Field(default=10, ge=1)
    retry_delay_seconds: float = Field(default=0.1, ge=0)
    fan_out_workers: int = Field(default=16, ge=1)
    log_event_every_x_messages: int = Field(default=100, ge=1)

    @classmethod
    def from_environment(cls) -> "MonitorSettings":
        """Load settings from ``ASSET_MONITOR_*`` environment variables."""

        values = {}
        for name in cls.model_fields:
            raw = _env(name.upper())
            if raw is not None:
                values[name] = raw
        return cls(**values)

    def base_log_fields(self) -> dict:
        """Fields repeated on every log entry emitted by a service."""

        return {
            "microservice_name": self.microservice_name,
            "instance_name": self.instance_name,
            "environment": self.environment,
        }


__all__ = ["MonitorSettings"]
