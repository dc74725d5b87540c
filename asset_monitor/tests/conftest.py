"""Shared in-memory collaborators for the monitor tests."""

from __future__ import annotations

import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


from asset_monitor.ancestry import AncestryResolver
from asset_monitor.config import MonitorSettings
from asset_monitor.core import ComplianceMonitor
from asset_monitor.errors import TransportError
from asset_monitor.policy import RawMatch


class MemoryStore:
    """Dict backed cache store; ``find`` matches dotted paths exactly."""

    def __init__(self) -> None:
        self.documents: Dict[str, Dict[str, Any]] = {}
        self.get_failures = 0
        self.get_calls = 0

    def put(self, key: str, payload: Dict[str, Any]) -> None:
        self.documents[key] = dict(payload)

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        self.get_calls += 1
        if self.get_failures:
            self.get_failures -= 1
            raise TransportError(f"unavailable {key}")
        return self.documents.get(key)

    def find(self, predicate: Dict[str, Any]):
        for document in list(self.documents.values()):
            if all(_lookup(document, path) == value for path, value in predicate.items()):
                yield document


def _lookup(document: Dict[str, Any], path: str) -> Any:
    current: Any = document
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


class RecordingPublisher:
    """Publisher that keeps every record; topics in ``failing_topics`` raise."""

    def __init__(self) -> None:
        self.published: List[Tuple[str, Dict[str, Any]]] = []
        self.failing_topics: set = set()
        self.fail_when = None
        self._lock = threading.Lock()

    def publish(self, record: Dict[str, Any], topic: str) -> str:
        if topic in self.failing_topics or (self.fail_when and self.fail_when(record)):
            raise TransportError(f"publish to {topic} failed")
        with self._lock:
            self.published.append((topic, record))
            return f"msg-{len(self.published)}"

    def on(self, topic: str) -> List[Dict[str, Any]]:
        return [record for t, record in self.published if t == topic]


class StubEvaluator:
    """Policy evaluator returning canned matches or raising ``error``."""

    def __init__(self) -> None:
        self.matches: List[RawMatch] = []
        self.error: Optional[Exception] = None
        self.evaluated: List[Any] = []

    def evaluate(self, assets):
        self.evaluated.append([asset.to_dict() for asset in assets])
        if self.error is not None:
            raise self.error
        return list(self.matches)

    def rule_sources(self) -> Dict[str, str]:
        return {"audit.rego": "package validator.gcp.lib\n"}


class StubHierarchy:
    def __init__(self, names: Optional[Dict[str, Tuple[str, str]]] = None) -> None:
        self.names = names or {}
        self.calls: List[Tuple[str, str]] = []

    def display_name(self, ancestor_type: str, ancestor_id: str) -> Tuple[str, str]:
        self.calls.append((ancestor_type, ancestor_id))
        return self.names[f"{ancestor_type}/{ancestor_id}"]


def cached_hierarchy_document(ancestor: str, data: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "asset": {
            "name": f"//cloudresourcemanager.googleapis.com/{ancestor}",
            "assetType": "cloudresourcemanager.googleapis.com/Organization",
            "ancestors": [],
            "resource": {"data": data},
        },
        "deleted": False,
    }


def sample_match(name: str = "require-owner-label", message: str = "missing owner label") -> RawMatch:
    return RawMatch(
        violation={"msg": message, "details": {"missing": ["owner"]}},
        constraint_config={
            "apiVersion": "constraints.gatekeeper.sh/v1alpha1",
            "kind": "GCPStorageBucketLabelsConstraintV1",
            "metadata": {"name": name, "annotations": {"category": "labels"}},
            "spec": {"severity": "high", "match": {"target": ["organization/*"]}, "parameters": {"labels": ["owner"]}},
        },
    )


NOW = datetime(2024, 3, 1, 12, 0, 10, tzinfo=timezone.utc)


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def evaluator() -> StubEvaluator:
    return StubEvaluator()


@pytest.fixture
def make_match():
    return sample_match


@pytest.fixture
def hierarchy() -> StubHierarchy:
    return StubHierarchy()


@pytest.fixture
def hierarchy_document():
    return cached_hierarchy_document


@pytest.fixture
def settings() -> MonitorSettings:
    return MonitorSettings(
        function_name="monitor_bucket_labels",
        project_id="ram-host",
        environment="test",
        deployment_time=datetime(2024, 1, 1, tzinfo=timezone.utc),
        retry_delay_seconds=0,
        retries_number=3,
    )


@pytest.fixture
def monitor(settings, store, publisher, evaluator, hierarchy) -> ComplianceMonitor:
    store.put(
        "\\\\cloudresourcemanager.googleapis.com\\organizations\\1",
        cached_hierarchy_document("organizations/1", {"displayName": "example.org"}),
    )
    store.put(
        "\\\\cloudresourcemanager.googleapis.com\\folders\\2",
        cached_hierarchy_document("folders/2", {"displayName": "Engineering"}),
    )
    store.put(
        "\\\\cloudresourcemanager.googleapis.com\\projects\\3",
        cached_hierarchy_document("projects/3", {"name": "Payments", "projectId": "payments-prod"}),
    )
    resolver = AncestryResolver(store, hierarchy, attempts=2, delay=0, sleep=lambda _: None)
    return ComplianceMonitor(settings, resolver, evaluator, publisher, store, clock=lambda: NOW)
