"""Publishing of records to message bus topics."""
from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional, Protocol, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import MonitorError, SerializationError, TransportError
from .logs import fields
from .utils import safe_paginate

logger = logging.getLogger(__name__)


class Publisher(Protocol):
    """Publish one record to a named topic and return the message id."""

    def publish(self, record: Mapping[str, Any], topic: str) -> str: ...


def encode_record(record: Mapping[str, Any]) -> str:
    """Serialize *record* to the UTF-8 JSON body sent on the bus."""

    try:
        return json.dumps(record, sort_keys=True, ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        raise SerializationError(f"cannot serialize record: {exc}") from exc


def directory_topic_name(prefix: str, customer_id: str) -> str:
    """Per directory topic name, e.g. ``gci-groups-C0123abc``."""

    return f"{prefix}-{customer_id}"


class SnsPublisher:
    """:class:`Publisher` backed by Amazon SNS.

    Topic ARNs are looked up once and remembered; a topic that does not
    exist yet is created on first use.
    """

    def __init__(self, client, *, auto_create: bool = True) -> None:
        self._client = client
        self._auto_create = auto_create
        self._arns: Dict[str, str] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_session(cls, session: boto3.session.Session, **kwargs) -> "SnsPublisher":
        return cls(session.client("sns"), **kwargs)

    def refresh_topics(self) -> None:
        """Reload the topic name to ARN map from the account."""

        try:
            topics = list(safe_paginate(self._client, "list_topics", "Topics"))
        except (ClientError, BotoCoreError) as exc:
            raise TransportError(f"list_topics: {exc}") from exc
        with self._lock:
            for topic in topics:
                arn = topic["TopicArn"]
                self._arns[arn.rsplit(":", 1)[-1]] = arn

    def topic_arn(self, topic: str) -> str:
        with self._lock:
            arn = self._arns.get(topic)
        if arn:
            return arn
        self.refresh_topics()
        with self._lock:
            arn = self._arns.get(topic)
        if arn:
            return arn
        if not self._auto_create:
            raise TransportError(f"topic {topic} does not exist")
        try:
            arn = self._client.create_topic(Name=topic, Tags=[{"Key": "name", "Value": topic.lower()}])["TopicArn"]
        except (ClientError, BotoCoreError) as exc:
            raise TransportError(f"create_topic {topic}: {exc}") from exc
        logger.info("created topic", extra=fields(topic=topic, topic_arn=arn))
        with self._lock:
            self._arns[topic] = arn
        return arn

    def publish(self, record: Mapping[str, Any], topic: str) -> str:
        body = encode_record(record)
        arn = self.topic_arn(topic)
        try:
            response = self._client.publish(TopicArn=arn, Message=body)
        except (ClientError, BotoCoreError) as exc:
            raise TransportError(f"publish to {topic}: {exc}") from exc
        return response["MessageId"]


@dataclass
class FanOutResult:
    published: int
    failed: int


def fan_out(
    publisher: Publisher,
    items: Iterable[Tuple[str, Mapping[str, Any]]],
    topic: str,
    *,
    max_workers: int = 16,
    log_every: int = 100,
    log_base: Optional[Dict[str, Any]] = None,
) -> FanOutResult:
    """Publish every ``(label, record)`` of *items* concurrently.

    A failed publish is counted and logged; it does not stop the others. The
    call returns once every publish has completed or failed.
    """

    counter_lock = threading.Lock()
    counts = {"published": 0, "failed": 0}

    def _publish(label: str, record: Mapping[str, Any]) -> None:
        try:
            message_id = publisher.publish(record, topic)
        except MonitorError as exc:
            with counter_lock:
                counts["failed"] += 1
                failed = counts["failed"]
            logger.warning(
                "publish failed",
                extra=fields(log_base, description=f"count {failed} on {label}: {exc}", topic=topic),
            )
            return
        with counter_lock:
            counts["published"] += 1
            published = counts["published"]
        if published % log_every == 0:
            logger.info(
                f"progression {published} messages published",
                extra=fields(log_base, description=f"now {label} id {message_id}", topic=topic),
            )

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = [executor.submit(_publish, label, record) for label, record in items]
        for future in as_completed(futures):
            future.result()

    result = FanOutResult(published=counts["published"], failed=counts["failed"])
    if result.failed:
        logger.error(
            "fan-out completed with failures",
            extra=fields(log_base, topic=topic, published=result.published, failed=result.failed),
        )
    return result


__all__ = [
    "FanOutResult",
    "Publisher",
    "SnsPublisher",
    "directory_topic_name",
    "encode_record",
    "fan_out",
]
