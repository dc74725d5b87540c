"""Tests for ancestry path building and display-name resolution."""

from __future__ import annotations

import sys
from pathlib import Path

from botocore.exceptions import ClientError

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


from asset_monitor.ancestry import (
    UNKNOWN,
    AncestryResolver,
    OrganizationsHierarchyClient,
    build_ancestry_path,
    make_compatible,
)


def test_build_ancestry_path_is_root_first_and_singular() -> None:
    """Nearest-parent-first ancestors become a root-first singular path."""

    path = build_ancestry_path(["projects/3", "folders/2", "organizations/1"])

    assert path == "organization/1/folder/2/project/3"


def test_ancestry_path_round_trip() -> None:
    """Splitting the path in pairs and reversing recovers the ancestors."""

    ancestors = ["projects/3", "folders/22", "folders/2", "organizations/1"]
    parts = build_ancestry_path(ancestors).split("/")
    pairs = [f"{parts[i]}s/{parts[i + 1]}" for i in range(0, len(parts), 2)]

    assert list(reversed(pairs)) == ancestors


def test_make_compatible_leaves_other_tokens() -> None:
    assert make_compatible("directories/C01/groups/g1") == "directories/C01/groups/g1"


def test_resolve_uses_cache_and_keeps_alignment(store, hierarchy, hierarchy_document) -> None:
    """Display names line up with ancestors; the project id is reported."""

    store.put(
        "\\\\cloudresourcemanager.googleapis.com\\organizations\\1",
        hierarchy_document("organizations/1", {"displayName": "example.org"}),
    )
    store.put(
        "\\\\cloudresourcemanager.googleapis.com\\projects\\3",
        hierarchy_document("projects/3", {"name": "Payments", "projectId": "payments-prod"}),
    )
    hierarchy.names["folders/2"] = ("Engineering", "")
    resolver = AncestryResolver(store, hierarchy, attempts=2, delay=0, sleep=lambda _: None)

    resolved = resolver.resolve(["projects/3", "folders/2", "organizations/1"])

    assert resolved.display_names == ["Payments", "Engineering", "example.org"]
    assert resolved.project_id == "payments-prod"
    assert hierarchy.calls == [("folders", "2")]


def test_resolve_degrades_to_unknown(store, hierarchy) -> None:
    """Failed lookups yield unknown and unknown types pass through."""

    resolver = AncestryResolver(store, hierarchy, attempts=2, delay=0, sleep=lambda _: None)

    resolved = resolver.resolve(["projects/404", "directories/C01", "organizations/1"])

    assert resolved.display_names == [UNKNOWN, "directories/C01", UNKNOWN]
    assert len(resolved.display_names) == 3


def test_resolve_retries_transient_cache_failures(store, hierarchy_document) -> None:
    """A flaky cache read is retried before giving up on it."""

    store.put(
        "\\\\cloudresourcemanager.googleapis.com\\folders\\2",
        hierarchy_document("folders/2", {"displayName": "Engineering"}),
    )
    store.get_failures = 2
    resolver = AncestryResolver(store, None, attempts=3, delay=0, sleep=lambda _: None)

    assert resolver.resolve(["folders/2"]).display_names == ["Engineering"]
    assert store.get_calls == 3


def test_resolve_without_hierarchy_client_after_exhausted_retries(store) -> None:
    store.get_failures = 5
    resolver = AncestryResolver(store, None, attempts=2, delay=0, sleep=lambda _: None)

    assert resolver.resolve(["folders/2"]).display_names == [UNKNOWN]


class _OrganizationsClient:
    def describe_organization(self):
        return {"Organization": {"Id": "o-abc"}}

    def describe_organizational_unit(self, OrganizationalUnitId):
        if OrganizationalUnitId == "ou-missing":
            raise ClientError(
                {"Error": {"Code": "OrganizationalUnitNotFoundException", "Message": "missing"}},
                "DescribeOrganizationalUnit",
            )
        return {"OrganizationalUnit": {"Name": "Engineering"}}

    def describe_account(self, AccountId):
        return {"Account": {"Id": AccountId, "Name": "Payments"}}


def test_organizations_hierarchy_client_maps_node_types(store) -> None:
    """Organizations, units and accounts back the hierarchy lookup."""

    resolver = AncestryResolver(
        store, OrganizationsHierarchyClient(_OrganizationsClient()), attempts=1, delay=0
    )

    resolved = resolver.resolve(["projects/123456789012", "folders/ou-missing", "folders/ou-1", "organizations/o-abc"])

    assert resolved.display_names == ["Payments", UNKNOWN, "Engineering", "o-abc"]
    assert resolved.project_id == "123456789012"
