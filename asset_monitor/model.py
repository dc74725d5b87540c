"""Canonical asset and feed message model.

Two historical JSON shapes reach the pipeline: the real-time feed uses
camelCase (``assetType``, ``iamPolicy``, ``ancestryPath``) while batch exports
use snake_case (``asset_type``, ``iam_policy``, ``ancestry_path``). Both are
normalised into :class:`FeedMessage`. On the way out the snake_case names are
written again as mirrors of the canonical fields so older policy templates keep
matching.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from .errors import ControlMessage, EmptyAssetError, MalformedInputError

DEFAULT_ORIGIN = "real-time"

# Sent by the asset feed once when a feed is created. Newer producers wrap
# control notices in {"kind": "control"} instead.
FEED_CONFIGURED_NOTICE = "You have successfully configured real time feed"

_FRACTION = re.compile(r"\.(\d+)")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp, tolerating nanosecond precision."""

    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str):
        raise MalformedInputError(f"timestamp is not a string: {value!r}")
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise MalformedInputError(f"invalid timestamp {value!r}: {exc}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Render *value* as RFC 3339 in UTC with a ``Z`` suffix."""

    if value is None:
        return None
    text = value.astimezone(timezone.utc).isoformat()
    return text.replace("+00:00", "Z")


def cache_key(name: str) -> str:
    """Return the slash-free cache document key for an asset *name*."""

    return name.replace("/", "\\")


def label_value(resource: Any, key: str) -> str:
    """Read label *key* from a resource payload, ``""`` when absent."""

    if not isinstance(resource, Mapping) or not key:
        return ""
    for container in (resource.get("data"), resource):
        if isinstance(container, Mapping):
            labels = container.get("labels")
            if isinstance(labels, Mapping) and key in labels:
                value = labels[key]
                return value if isinstance(value, str) else str(value)
    return ""


def _is_empty(payload: Any) -> bool:
    return payload is None or payload == {} or payload == [] or payload == ""


@dataclass
class Step:
    """One hop of the end-to-end latency trail."""

    step_id: str
    step_timestamp: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"step_id": self.step_id}
        if self.step_timestamp is not None:
            out["step_timestamp"] = format_timestamp(self.step_timestamp)
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Step":
        return cls(
            step_id=str(data.get("step_id", "")),
            step_timestamp=parse_timestamp(data.get("step_timestamp")),
        )


@dataclass
class Asset:
    """Point in time snapshot of a monitored resource or IAM policy."""

    name: str
    asset_type: str = ""
    ancestors: List[str] = field(default_factory=list)
    ancestry_path: str = ""
    ancestry_path_display_name: str = ""
    ancestors_display_name: List[str] = field(default_factory=list)
    owner: str = ""
    violation_resolver: str = ""
    resource: Any = None
    iam_policy: Any = None
    project_id: str = ""

    def is_empty(self) -> bool:
        return _is_empty(self.resource) and _is_empty(self.iam_policy)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize with canonical names and their legacy mirrors."""

        out: Dict[str, Any] = {
            "name": self.name,
            "owner": self.owner,
            "violationResolver": self.violation_resolver,
            "ancestryPathDisplayName": self.ancestry_path_display_name,
            "ancestryPath": self.ancestry_path,
            "ancestry_path": self.ancestry_path,
            "ancestorsDisplayName": list(self.ancestors_display_name),
            "ancestors": list(self.ancestors),
            "assetType": self.asset_type,
            "asset_type": self.asset_type,
            "iamPolicy": self.iam_policy,
            "iam_policy": self.iam_policy,
            "resource": self.resource,
        }
        if self.project_id:
            out["projectId"] = self.project_id
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Asset":
        name = data.get("name")
        if not isinstance(name, str) or not name:
            raise MalformedInputError("asset.name is missing or not a string")
        ancestors = data.get("ancestors") or []
        if not isinstance(ancestors, list) or not all(isinstance(a, str) for a in ancestors):
            raise MalformedInputError("asset.ancestors must be a list of strings")
        display = data.get("ancestorsDisplayName") or []
        if not isinstance(display, list):
            display = []
        return cls(
            name=name,
            asset_type=_first(data, "assetType", "asset_type"),
            ancestors=list(ancestors),
            ancestry_path=_first(data, "ancestryPath", "ancestry_path"),
            ancestry_path_display_name=str(data.get("ancestryPathDisplayName") or ""),
            ancestors_display_name=[str(item) for item in display],
            owner=str(data.get("owner") or ""),
            violation_resolver=str(data.get("violationResolver") or ""),
            resource=data.get("resource"),
            iam_policy=_first_payload(data, "iamPolicy", "iam_policy"),
            project_id=str(data.get("projectId") or ""),
        )


def _first(data: Mapping[str, Any], canonical: str, legacy: str) -> str:
    value = data.get(canonical) or data.get(legacy) or ""
    return value if isinstance(value, str) else str(value)


def _first_payload(data: Mapping[str, Any], canonical: str, legacy: str) -> Any:
    value = data.get(canonical)
    if _is_empty(value):
        value = data.get(legacy)
    return value


@dataclass
class FeedMessage:
    """Envelope carrying an asset, its deletion flag and timing metadata."""

    asset: Asset
    start_time: Optional[datetime] = None
    deleted: bool = False
    origin: str = DEFAULT_ORIGIN
    step_stack: List[Step] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "asset": self.asset.to_dict(),
            "window": {"startTime": format_timestamp(self.start_time)},
            "deleted": self.deleted,
            "origin": self.origin,
        }
        if self.step_stack:
            out["step_stack"] = [step.to_dict() for step in self.step_stack]
        return out

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    def as_deletion(self, start_time: Optional[datetime], origin: str) -> "FeedMessage":
        """Return a copy announcing the deletion of this asset."""

        return replace(
            self,
            asset=replace(self.asset),
            start_time=start_time,
            deleted=True,
            origin=origin,
            step_stack=list(self.step_stack),
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FeedMessage":
        asset = data.get("asset")
        if not isinstance(asset, Mapping):
            raise MalformedInputError("feed message has no asset object")
        window = data.get("window") or {}
        if not isinstance(window, Mapping):
            raise MalformedInputError("window must be an object")
        deleted = data.get("deleted", False)
        if not isinstance(deleted, bool):
            raise MalformedInputError("deleted must be a boolean")
        raw_steps = data.get("step_stack") or []
        if not isinstance(raw_steps, list):
            raise MalformedInputError("step_stack must be a list")
        return cls(
            asset=Asset.from_dict(asset),
            start_time=parse_timestamp(window.get("startTime")),
            deleted=deleted,
            origin=str(data.get("origin") or DEFAULT_ORIGIN),
            step_stack=[Step.from_dict(s) for s in raw_steps if isinstance(s, Mapping)],
        )


def _decode(raw: bytes | str) -> Mapping[str, Any]:
    if isinstance(raw, bytes):
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedInputError(f"payload is not UTF-8: {exc}") from exc
    else:
        text = raw
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        if FEED_CONFIGURED_NOTICE in text:
            raise ControlMessage(text) from exc
        raise MalformedInputError(f"payload is not JSON: {exc}") from exc
    if not isinstance(data, dict):
        if isinstance(data, str) and FEED_CONFIGURED_NOTICE in data:
            raise ControlMessage(data)
        raise MalformedInputError("payload is not a JSON object")
    if data.get("kind") == "control":
        raise ControlMessage(str(data.get("message", "")))
    return data


def parse_feed_message(raw: bytes | str) -> FeedMessage:
    """Parse *raw* into a :class:`FeedMessage` without the empty-asset rule."""

    return FeedMessage.from_dict(_decode(raw))


def normalize(raw: bytes | str) -> FeedMessage:
    """Parse and validate an inbound asset change event.

    Raises :class:`MalformedInputError` for unknown shapes,
    :class:`EmptyAssetError` for a live asset without any payload and
    :class:`ControlMessage` for feed control notices.
    """

    message = parse_feed_message(raw)
    if not message.deleted and message.asset.is_empty():
        raise EmptyAssetError(f"asset {message.asset.name} has neither resource nor iamPolicy")
    return message


__all__ = [
    "Asset",
    "DEFAULT_ORIGIN",
    "FEED_CONFIGURED_NOTICE",
    "FeedMessage",
    "Step",
    "cache_key",
    "format_timestamp",
    "label_value",
    "normalize",
    "parse_feed_message",
    "parse_timestamp",
]
