"""Conversion of directory admin-activity log entries into feed messages.

Handlers are registered per event name (``CREATE_GROUP``, ``ADD_GROUP_MEMBER``
...) by the modules of this package and looked up by :class:`LogEntryConverter`.
"""
from __future__ import annotations

import importlib
import json
import logging
import pkgutil
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Tuple

from ..ancestry import HIERARCHY_ASSET_PREFIX
from ..cache import CacheStore, get_with_retry
from ..config import MonitorSettings
from ..errors import MalformedInputError
from ..logs import fields
from ..model import cache_key, parse_timestamp
from ..publisher import Publisher

logger = logging.getLogger(__name__)

LOG_EXPORT_ORIGIN = "real-time-log-export"
GROUP_ASSET_TYPE = "www.googleapis.com/admin/directory/groups"
MEMBER_ASSET_TYPE = "www.googleapis.com/admin/directory/members"
GROUP_SETTINGS_ASSET_TYPE = "groupssettings.googleapis.com/groupSettings"


class DirectoryClient(Protocol):
    """Read access to the identity directory.

    Implementations raise :class:`~asset_monitor.errors.TransportError` when
    the directory cannot be reached.
    """

    def get_group(self, group_email: str) -> Dict[str, Any]: ...

    def get_member(self, group_email: str, member_email: str) -> Dict[str, Any]: ...

    def get_group_settings(self, group_email: str) -> Dict[str, Any]: ...

    def list_members(
        self, group_id: str, page_token: Optional[str] = None
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]: ...

    def customer_id(self, organization_id: str) -> str: ...


@dataclass
class EventContext:
    """Everything one log entry conversion needs; built per invocation."""

    settings: MonitorSettings
    cache: CacheStore
    directory: DirectoryClient
    publisher: Publisher
    customer_id: str
    start_time: Optional[datetime]
    parameters: Dict[str, str] = field(default_factory=dict)
    log_base: Dict[str, Any] = field(default_factory=dict)

    @property
    def group_email(self) -> str:
        return self.parameters.get("GROUP_EMAIL", "").lower()

    @property
    def directory_ancestor(self) -> str:
        return f"directories/{self.customer_id}"


EventHandler = Callable[[EventContext], int]


class EventRegistry:
    """Registry of directory event handlers keyed by event name."""

    def __init__(self) -> None:
        self._handlers: Dict[str, EventHandler] = {}

    @staticmethod
    def _normalize(name: str) -> str:
        if not name:
            raise ValueError("Event name must be a non-empty string")
        return name.strip().upper()

    def register(self, name: str) -> Callable[[EventHandler], EventHandler]:
        """Return a decorator that registers *name* for the wrapped handler."""

        normalized = self._normalize(name)

        def decorator(func: EventHandler) -> EventHandler:
            if normalized in self._handlers and self._handlers[normalized] is not func:
                raise ValueError(f"Event '{name}' is already registered")
            self._handlers[normalized] = func
            return func

        return decorator

    def __contains__(self, name: object) -> bool:
        if not isinstance(name, str) or not name:
            return False
        return self._normalize(name) in self._handlers

    def __getitem__(self, name: str) -> EventHandler:
        return self._handlers[self._normalize(name)]


EVENT_REGISTRY = EventRegistry()
register_event = EVENT_REGISTRY.register


def lookup_customer_id(
    cache: CacheStore,
    directory: DirectoryClient,
    organization_id: str,
    *,
    attempts: int = 10,
    delay: float = 0.1,
) -> str:
    """Return the directory customer id owning *organization_id*.

    The cached organization document is read first; the directory is asked
    only when the cache has nothing usable.
    """

    key = cache_key(f"{HIERARCHY_ASSET_PREFIX}organizations/{organization_id}")
    document = get_with_retry(cache, key, attempts=attempts, delay=delay)
    if document is not None:
        owner = _nested(document, "asset", "resource", "data", "owner")
        customer_id = owner.get("directoryCustomerId") if owner else None
        if isinstance(customer_id, str) and customer_id:
            return customer_id
    logger.warning("not found in cache, asking directory", extra=fields(cache_key=key))
    return directory.customer_id(organization_id)


def _nested(document: Mapping[str, Any], *path: str) -> Optional[Mapping[str, Any]]:
    current: Any = document
    for part in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
    return current if isinstance(current, Mapping) else None


def _parameters(raw: Any) -> Dict[str, str]:
    if not isinstance(raw, list):
        raise MalformedInputError("event parameters must be a list")
    parameters: Dict[str, str] = {}
    for item in raw:
        if isinstance(item, Mapping) and isinstance(item.get("name"), str):
            value = item.get("value")
            parameters[item["name"]] = value if isinstance(value, str) else ""
    return parameters


class LogEntryConverter:
    """Turn admin-activity log entries into directory feed messages."""

    def __init__(
        self,
        settings: MonitorSettings,
        cache: CacheStore,
        directory: DirectoryClient,
        publisher: Publisher,
        registry: EventRegistry = EVENT_REGISTRY,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self.directory = directory
        self.publisher = publisher
        self.registry = registry

    def convert(self, raw: bytes | str, *, message_id: str = "") -> int:
        """Convert one log entry and return the number of feed messages published.

        Entries this converter does not manage are logged and yield ``0``.
        Malformed entries raise :class:`MalformedInputError`; transport
        failures propagate so the entry is redelivered.
        """

        log_base = dict(self.settings.base_log_fields(), triggering_message_id=message_id)
        try:
            entry = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise MalformedInputError(f"log entry is not JSON: {exc}") from exc
        if not isinstance(entry, dict):
            raise MalformedInputError("log entry is not a JSON object")

        resource = entry.get("resource") or {}
        resource_type = resource.get("type") if isinstance(resource, Mapping) else None
        if resource_type != "audited_resource":
            logger.info("cancel", extra=fields(log_base, description=f"unmanaged resource type {resource_type}"))
            return 0
        service = (resource.get("labels") or {}).get("service")
        if service != "admin.googleapis.com":
            logger.info("cancel", extra=fields(log_base, description=f"unmanaged service {service}"))
            return 0

        payload = entry.get("protoPayload")
        if not isinstance(payload, Mapping):
            raise MalformedInputError("log entry has no protoPayload object")
        resource_name = payload.get("resourceName")
        parts = resource_name.split("/") if isinstance(resource_name, str) else []
        if len(parts) < 2 or not parts[1]:
            raise MalformedInputError(f"cannot read organization from resourceName {resource_name!r}")

        customer_id = lookup_customer_id(
            self.cache,
            self.directory,
            parts[1],
            attempts=self.settings.retries_number,
            delay=self.settings.retry_delay_seconds,
        )
        if not customer_id:
            logger.error("noretry", extra=fields(log_base, description="directory customer id not found"))
            return 0

        metadata = payload.get("metadata") or {}
        if not isinstance(metadata, Mapping):
            raise MalformedInputError("protoPayload.metadata must be an object")
        events = metadata.get("event") or []
        if not isinstance(events, list):
            raise MalformedInputError("protoPayload.metadata.event must be a list")
        published = 0
        for event in events:
            if not isinstance(event, Mapping):
                continue
            if event.get("eventType") != "GROUP_SETTINGS":
                logger.info("cancel", extra=fields(log_base, description=f"unmanaged event type {event.get('eventType')}"))
                continue
            name = event.get("eventName")
            if name not in self.registry:
                logger.info("cancel", extra=fields(log_base, description=f"unmanaged event name {name}"))
                continue
            context = EventContext(
                settings=self.settings,
                cache=self.cache,
                directory=self.directory,
                publisher=self.publisher,
                customer_id=customer_id,
                start_time=parse_timestamp(entry.get("timestamp")),
                parameters=_parameters(event.get("parameter") or []),
                log_base=dict(log_base, insert_id=entry.get("insertId")),
            )
            if not context.group_email:
                logger.error("noretry", extra=fields(context.log_base, description="GROUP_EMAIL parameter not found"))
                continue
            published += self.registry[name](context)
        return published


def _import_handler_modules() -> None:
    """Import modules that register event handlers via decorators."""

    for module_info in pkgutil.iter_modules(__path__):
        if module_info.name.startswith("_"):
            continue
        importlib.import_module(f"{__name__}.{module_info.name}")


_import_handler_modules()

from .members import fan_out_group_members  # noqa: E402

__all__ = [
    "DirectoryClient",
    "EVENT_REGISTRY",
    "EventContext",
    "EventRegistry",
    "GROUP_ASSET_TYPE",
    "GROUP_SETTINGS_ASSET_TYPE",
    "LOG_EXPORT_ORIGIN",
    "LogEntryConverter",
    "MEMBER_ASSET_TYPE",
    "fan_out_group_members",
    "lookup_customer_id",
    "register_event",
]
