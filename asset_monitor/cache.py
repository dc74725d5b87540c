"""Reconciliation cache of last known asset state.

The cache holds, for every observed asset or directory entity, the last live
feed message seen for it. Deletion events often arrive without the payload
needed to rebuild downstream records; the cached document fills that gap.
Documents are overwritten on every live update and kept (marked deleted)
when the entity goes away.
"""
from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Protocol

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import BotoCoreError, ClientError

from .config import MonitorSettings
from .errors import ControlMessage, MalformedInputError, TransportError
from .logs import fields
from .model import FeedMessage, Step, cache_key, format_timestamp, parse_feed_message
from .retry import call_with_backoff
from .utils import error_code, from_dynamo, to_dynamo

logger = logging.getLogger(__name__)


class CacheStore(Protocol):
    """Document store addressed by slash-free string keys."""

    def put(self, key: str, payload: Mapping[str, Any]) -> None: ...

    def get(self, key: str) -> Optional[Dict[str, Any]]: ...

    def find(self, predicate: Mapping[str, Any]) -> Iterator[Dict[str, Any]]: ...


class DynamoCacheStore:
    """:class:`CacheStore` backed by a DynamoDB table keyed on ``id``.

    Each item is ``{"id": <key>, "document": <feed message>}``. Predicates are
    dotted paths relative to the document, e.g. ``asset.resource.email``.
    """

    def __init__(self, table) -> None:
        self._table = table

    @classmethod
    def from_session(cls, session: boto3.session.Session, table_name: str) -> "DynamoCacheStore":
        return cls(session.resource("dynamodb").Table(table_name))

    def put(self, key: str, payload: Mapping[str, Any]) -> None:
        try:
            self._table.put_item(Item={"id": key, "document": to_dynamo(dict(payload))})
        except (ClientError, BotoCoreError) as exc:
            raise TransportError(f"put_item {key}: {exc}") from exc

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            response = self._table.get_item(Key={"id": key}, ConsistentRead=True)
        except ClientError as exc:
            if error_code(exc) == "ResourceNotFoundException":
                raise TransportError(f"cache table missing while reading {key}: {exc}") from exc
            raise TransportError(f"get_item {key}: {exc}") from exc
        except BotoCoreError as exc:
            raise TransportError(f"get_item {key}: {exc}") from exc
        item = response.get("Item")
        if not item:
            return None
        return from_dynamo(item.get("document") or {})

    def find(self, predicate: Mapping[str, Any]) -> Iterator[Dict[str, Any]]:
        if not predicate:
            raise ValueError("predicate must name at least one field")
        condition = None
        for path, value in predicate.items():
            clause = Attr(f"document.{path}").eq(value)
            condition = clause if condition is None else condition & clause
        kwargs: Dict[str, Any] = {"FilterExpression": condition}
        while True:
            try:
                response = self._table.scan(**kwargs)
            except (ClientError, BotoCoreError) as exc:
                raise TransportError(f"scan {dict(predicate)}: {exc}") from exc
            for item in response.get("Items", []):
                yield from_dynamo(item.get("document") or {})
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                return
            kwargs["ExclusiveStartKey"] = last_key


def get_with_retry(
    store: CacheStore,
    key: str,
    *,
    attempts: int = 10,
    delay: float = 0.1,
    sleep: Optional[Callable[[float], None]] = None,
    cancel_event: Optional[threading.Event] = None,
) -> Optional[Dict[str, Any]]:
    """Read *key*, retrying transport failures; a miss returns ``None`` at once.

    When every attempt fails on transport the lookup is reported as a miss so
    callers can fall back to the authoritative source.
    """

    kwargs: Dict[str, Any] = {}
    if sleep is not None:
        kwargs["sleep"] = sleep
    try:
        return call_with_backoff(
            lambda: store.get(key),
            attempts=attempts,
            delay=delay,
            retry_on=(TransportError,),
            cancel_event=cancel_event,
            description=f"cache get {key}",
            **kwargs,
        )
    except TransportError:
        logger.warning("not_found_in_cache", extra=fields(description=f"gave up reading {key}"))
        return None


def reconstruct_deletions(
    store: CacheStore,
    predicate: Mapping[str, Any],
    *,
    start_time: Optional[datetime],
    origin: str,
) -> List[FeedMessage]:
    """Rebuild deletion feed messages from every cached document matching *predicate*.

    Each match keeps its cached asset but takes the deletion's timestamp and
    origin. Several matches mean orphan duplicates in the cache; all of them
    are returned. No match is logged and yields an empty list.
    """

    messages: List[FeedMessage] = []
    for document in store.find(predicate):
        try:
            cached = FeedMessage.from_dict(document)
        except MalformedInputError as exc:
            logger.error(
                "noretry",
                extra=fields(description=f"unreadable cached document for {dict(predicate)}: {exc}"),
            )
            continue
        messages.append(cached.as_deletion(start_time, origin))
    if not messages:
        logger.error(
            "deleted entity not found in cache, cannot clean up derived records",
            extra=fields(predicate=dict(predicate), origin=origin),
        )
    elif len(messages) > 1:
        logger.warning(
            "multiple cached documents for one deletion",
            extra=fields(predicate=dict(predicate), count=len(messages)),
        )
    return messages


class CacheRecorder:
    """Keep the cache in step with the asset feed.

    Live observations overwrite the document for the asset; deletions keep
    the last known state and only flip ``deleted`` so later deletion events
    can still be reconstructed.
    """

    def __init__(
        self,
        store: CacheStore,
        settings: Optional[MonitorSettings] = None,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._store = store
        self._settings = settings or MonitorSettings()
        self._clock = clock

    def record(
        self,
        raw: bytes | str,
        *,
        message_id: str = "",
        published_at: Optional[datetime] = None,
    ) -> Optional[str]:
        """Store *raw* and return the cache key written, ``None`` when skipped.

        Raises :class:`TransportError` when the store is unreachable so the
        message is redelivered.
        """

        log_base = dict(self._settings.base_log_fields(), triggering_message_id=message_id)
        try:
            message = parse_feed_message(raw)
        except ControlMessage as exc:
            logger.info("cancel", extra=fields(log_base, description=f"ignored control message: {exc}"))
            return None
        except MalformedInputError as exc:
            logger.critical("noretry", extra=fields(log_base, description=str(exc)))
            return None

        if not message.step_stack and message.start_time is not None:
            message.step_stack.append(
                Step(
                    step_id=f"{message.asset.name}/{format_timestamp(message.start_time)}",
                    step_timestamp=message.start_time,
                )
            )
        message.step_stack.append(Step(step_id=f"cache/{message_id}", step_timestamp=published_at))

        key = cache_key(message.asset.name)
        if message.deleted:
            cached = self._store.get(key)
            if cached is not None:
                deletion = FeedMessage.from_dict(cached).as_deletion(message.start_time, message.origin)
                deletion.step_stack = message.step_stack
                message = deletion
        try:
            self._store.put(key, message.to_dict())
        except TransportError as exc:
            logger.critical("redo_on_transient", extra=fields(log_base, description=str(exc)))
            raise
        now = self._clock()
        logger.info(
            f"finish {'mark deleted' if message.deleted else 'set'} doc {key}",
            extra=fields(
                log_base,
                asset_inventory_origin=message.origin,
                latency_e2e_seconds=_seconds_since(message.step_stack[0].step_timestamp, now),
                step_stack=[step.to_dict() for step in message.step_stack],
            ),
        )
        return key


def _seconds_since(start: Optional[datetime], now: datetime) -> Optional[float]:
    if start is None:
        return None
    return (now - start).total_seconds()


__all__ = [
    "CacheRecorder",
    "CacheStore",
    "DynamoCacheStore",
    "get_with_retry",
    "reconstruct_deletions",
]
