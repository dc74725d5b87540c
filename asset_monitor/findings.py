"""Records emitted by the compliance monitor."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .model import FeedMessage, Step, format_timestamp


@dataclass
class ComplianceStatus:
    """Verdict for one asset against one rule, emitted for every event."""

    asset_name: str
    asset_inventory_timestamp: Optional[datetime]
    asset_inventory_origin: str
    rule_name: str
    rule_deployment_timestamp: Optional[datetime]
    compliant: bool
    deleted: bool
    step_stack: List[Step] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "assetName": self.asset_name,
            "assetInventoryTimeStamp": format_timestamp(self.asset_inventory_timestamp),
            "assetInventoryOrigin": self.asset_inventory_origin,
            "ruleName": self.rule_name,
            "ruleDeploymentTimeStamp": format_timestamp(self.rule_deployment_timestamp),
            "compliant": self.compliant,
            "deleted": self.deleted,
        }
        if self.step_stack:
            out["step_stack"] = [step.to_dict() for step in self.step_stack]
        return out


@dataclass
class NonCompliance:
    message: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class FunctionConfig:
    function_name: str
    deployment_time: Optional[datetime]
    project_id: str
    environment: str


@dataclass
class ConstraintConfig:
    """Content of the constraint definition that matched."""

    api_version: str = ""
    kind: str = ""
    name: str = ""
    annotations: Dict[str, Any] = field(default_factory=dict)
    severity: str = ""
    match: Dict[str, Any] = field(default_factory=dict)
    exclude: Dict[str, Any] = field(default_factory=dict)
    parameters: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        spec: Dict[str, Any] = {
            "severity": self.severity,
            "match": self.match,
            "parameters": self.parameters,
        }
        if self.exclude:
            spec["exclude"] = self.exclude
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "metadata": {"name": self.name, "annotation": self.annotations},
            "spec": spec,
        }


@dataclass
class Violation:
    """One non-compliance finding for a live asset."""

    non_compliance: NonCompliance
    function_config: FunctionConfig
    constraint_config: ConstraintConfig
    feed_message: FeedMessage
    rego_modules: Dict[str, str] = field(default_factory=dict)
    step_stack: List[Step] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "nonCompliance": {
                "message": self.non_compliance.message,
                "metadata": self.non_compliance.metadata,
            },
            "functionConfig": {
                "functionName": self.function_config.function_name,
                "deploymentTime": format_timestamp(self.function_config.deployment_time),
                "projectID": self.function_config.project_id,
                "environment": self.function_config.environment,
            },
            "constraintConfig": self.constraint_config.to_dict(),
            "feedMessage": self.feed_message.to_dict(),
            "regoModules": dict(self.rego_modules),
        }
        if self.step_stack:
            out["step_stack"] = [step.to_dict() for step in self.step_stack]
        return out


__all__ = [
    "ComplianceStatus",
    "ConstraintConfig",
    "FunctionConfig",
    "NonCompliance",
    "Violation",
]
