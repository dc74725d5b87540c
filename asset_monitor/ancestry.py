"""Ancestor display-name resolution and ancestry path building."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError, EndpointConnectionError

from .cache import CacheStore, get_with_retry
from .logs import fields
from .model import cache_key

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"
HIERARCHY_ASSET_PREFIX = "//cloudresourcemanager.googleapis.com/"
KNOWN_ANCESTOR_TYPES = ("organizations", "folders", "projects")

_SINGULAR = {
    "organizations/": "organization/",
    "folders/": "folder/",
    "projects/": "project/",
}


def make_compatible(path: str) -> str:
    """Rewrite plural hierarchy tokens to the singular form used by match rules."""

    for plural, singular in _SINGULAR.items():
        path = path.replace(plural, singular)
    return path


def build_ancestry_path(ancestors: Sequence[str]) -> str:
    """Join nearest-parent-first *ancestors* into a root-first path."""

    return make_compatible("/".join(reversed(list(ancestors))))


class HierarchyClient(Protocol):
    """Authoritative lookup of a hierarchy node's display name."""

    def display_name(self, ancestor_type: str, ancestor_id: str) -> Tuple[str, str]:
        """Return ``(display_name, project_id)``; ``project_id`` may be empty."""
        ...


class OrganizationsHierarchyClient:
    """Resolve hierarchy nodes with AWS Organizations.

    Organizations map to the organization, folders to organizational units
    and projects to member accounts.
    """

    def __init__(self, client) -> None:
        self._client = client

    @classmethod
    def from_session(cls, session: boto3.session.Session) -> "OrganizationsHierarchyClient":
        return cls(session.client("organizations"))

    def display_name(self, ancestor_type: str, ancestor_id: str) -> Tuple[str, str]:
        if ancestor_type == "organizations":
            organization = self._client.describe_organization()["Organization"]
            return organization.get("Id", ancestor_id), ""
        if ancestor_type == "folders":
            unit = self._client.describe_organizational_unit(OrganizationalUnitId=ancestor_id)
            return unit["OrganizationalUnit"]["Name"], ""
        if ancestor_type == "projects":
            account = self._client.describe_account(AccountId=ancestor_id)["Account"]
            return account["Name"], account.get("Id", ancestor_id)
        raise ValueError(f"unsupported ancestor type {ancestor_type}")


@dataclass
class ResolvedAncestry:
    display_names: List[str] = field(default_factory=list)
    project_id: str = ""


class AncestryResolver:
    """Translate raw ancestor identifiers into friendly names.

    The cache is tried first with a bounded retry, then the hierarchy API.
    Resolution never fails: unknown ancestor types are passed through and
    lookups that fail everywhere degrade to ``"unknown"``.
    """

    def __init__(
        self,
        cache: CacheStore,
        hierarchy: Optional[HierarchyClient] = None,
        *,
        attempts: int = 10,
        delay: float = 0.1,
        sleep: Optional[Callable[[float], None]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self._cache = cache
        self._hierarchy = hierarchy
        self._attempts = attempts
        self._delay = delay
        self._sleep = sleep
        self._cancel_event = cancel_event

    def resolve(self, ancestors: Sequence[str]) -> ResolvedAncestry:
        resolved = ResolvedAncestry()
        for ancestor in ancestors:
            display_name, project_id = self._display_name(ancestor)
            resolved.display_names.append(display_name)
            if project_id:
                resolved.project_id = project_id
        return resolved

    def _display_name(self, ancestor: str) -> Tuple[str, str]:
        ancestor_type, _, ancestor_id = ancestor.partition("/")
        if ancestor_type not in KNOWN_ANCESTOR_TYPES or not ancestor_id:
            return ancestor, ""

        key = cache_key(HIERARCHY_ASSET_PREFIX + ancestor)
        document = get_with_retry(
            self._cache,
            key,
            attempts=self._attempts,
            delay=self._delay,
            sleep=self._sleep,
            cancel_event=self._cancel_event,
        )
        if document is not None:
            found = _from_cached_document(ancestor_type, document)
            if found is not None:
                return found

        logger.warning("not found in cache, asking hierarchy API", extra=fields(cache_key=key))
        if self._hierarchy is None:
            return UNKNOWN, ""
        try:
            return self._hierarchy.display_name(ancestor_type, ancestor_id)
        except (ClientError, EndpointConnectionError, BotoCoreError, KeyError, ValueError) as exc:
            logger.warning(
                "hierarchy lookup failed",
                extra=fields(ancestor=ancestor, description=str(exc)),
            )
            return UNKNOWN, ""


def _from_cached_document(ancestor_type: str, document: Mapping[str, Any]) -> Optional[Tuple[str, str]]:
    data = _nested(document, "asset", "resource", "data")
    if data is None:
        return None
    if ancestor_type == "projects":
        name = data.get("name")
        if not isinstance(name, str):
            return None
        project_id = data.get("projectId")
        return name, project_id if isinstance(project_id, str) else ""
    display_name = data.get("displayName")
    if not isinstance(display_name, str):
        return None
    return display_name, ""


def _nested(document: Mapping[str, Any], *path: str) -> Optional[Dict[str, Any]]:
    current: Any = document
    for part in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
    return current if isinstance(current, dict) else None


__all__ = [
    "AncestryResolver",
    "HierarchyClient",
    "KNOWN_ANCESTOR_TYPES",
    "OrganizationsHierarchyClient",
    "ResolvedAncestry",
    "UNKNOWN",
    "build_ancestry_path",
    "make_compatible",
]
