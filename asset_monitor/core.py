"""Compliance monitor pipeline.

One inbound asset change event goes through::

    received -> normalized -> reconciled (deleted) | resolved (live)
             -> evaluated -> published -> done

and ends either ``DONE``, ``SKIPPED`` (control notice), ``ABORTED`` (no retry,
acknowledge the message) or ``FAILED`` (let the bus redeliver). Nothing is kept
between invocations, so a redelivered event is simply processed again.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import boto3

from .ancestry import AncestryResolver, OrganizationsHierarchyClient, build_ancestry_path
from .cache import CacheStore, DynamoCacheStore
from .config import MonitorSettings
from .errors import (
    ControlMessage,
    MalformedInputError,
    MessageTooOldError,
    MonitorError,
    RetryableError,
    is_retryable,
)
from .findings import ComplianceStatus, ConstraintConfig, FunctionConfig, NonCompliance, Violation
from .logs import fields
from .model import FeedMessage, Step, cache_key, format_timestamp, label_value, normalize
from .policy import PolicyEvaluator, RawMatch
from .publisher import Publisher, SnsPublisher


class State(str, enum.Enum):
    RECEIVED = "received"
    NORMALIZED = "normalized"
    RECONCILED = "reconciled"
    RESOLVED = "resolved"
    EVALUATED = "evaluated"
    PUBLISHED = "published"
    DONE = "done"
    SKIPPED = "skipped"
    ABORTED = "aborted"
    FAILED = "failed"


@dataclass
class ProcessingResult:
    """Outcome of one invocation."""

    state: State
    status: Optional[ComplianceStatus] = None
    violations: List[Violation] = field(default_factory=list)
    reason: str = ""

    @property
    def should_retry(self) -> bool:
        return self.state is State.FAILED


logger = logging.getLogger(__name__)


def project_violation(
    match: RawMatch,
    feed_message: FeedMessage,
    function_config: FunctionConfig,
    rego_modules: Dict[str, str],
    step_stack: List[Step],
) -> Violation:
    """Turn one raw engine match into a :class:`Violation`."""

    config = match.constraint_config
    metadata = _mapping(config.get("metadata"))
    spec = _mapping(config.get("spec"))
    constraint = ConstraintConfig(
        api_version=_text(config.get("apiVersion")),
        kind=_text(config.get("kind")),
        name=_text(metadata.get("name")),
        annotations=_mapping(metadata.get("annotations")),
        severity=_text(spec.get("severity")),
        match=_mapping(spec.get("match")),
        exclude=_mapping(spec.get("exclude")),
        parameters=_mapping(spec.get("parameters")),
    )
    return Violation(
        non_compliance=NonCompliance(message=match.message, metadata=match.details),
        function_config=function_config,
        constraint_config=constraint,
        feed_message=feed_message,
        rego_modules=rego_modules,
        step_stack=step_stack,
    )


def _mapping(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


class ComplianceMonitor:
    """Evaluate asset change events against one deployed rule set."""

    def __init__(
        self,
        settings: MonitorSettings,
        resolver: AncestryResolver,
        evaluator: PolicyEvaluator,
        publisher: Publisher,
        cache: Optional[CacheStore] = None,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.settings = settings
        self.resolver = resolver
        self.evaluator = evaluator
        self.publisher = publisher
        self.cache = cache
        self._clock = clock

    @classmethod
    def from_session(
        cls, session: boto3.session.Session, settings: Optional[MonitorSettings] = None
    ) -> "ComplianceMonitor":
        """Wire the monitor to DynamoDB, SNS and Organizations."""

        settings = settings or MonitorSettings.from_environment()
        cache = DynamoCacheStore.from_session(session, settings.cache_table)
        resolver = AncestryResolver(
            cache,
            OrganizationsHierarchyClient.from_session(session),
            attempts=settings.retries_number,
            delay=settings.retry_delay_seconds,
        )
        evaluator = PolicyEvaluator(
            opa_folder=settings.opa_folder,
            writable_folder=settings.writable_opa_folder,
            rego_modules_folder=settings.rego_modules_folder,
            query=settings.opa_query,
            opa_binary=settings.opa_binary,
            timeout=settings.opa_timeout_seconds,
        )
        return cls(settings, resolver, evaluator, SnsPublisher.from_session(session), cache)

    def handle(
        self,
        raw: bytes | str,
        *,
        message_id: str = "",
        published_at: Optional[datetime] = None,
        trigger_topic: str = "",
    ) -> ProcessingResult:
        """Process *raw* and raise :class:`RetryableError` when it must be redelivered."""

        result = self.process(raw, message_id=message_id, published_at=published_at, trigger_topic=trigger_topic)
        if result.should_retry:
            raise RetryableError(result.reason)
        return result

    def process(
        self,
        raw: bytes | str,
        *,
        message_id: str = "",
        published_at: Optional[datetime] = None,
        trigger_topic: str = "",
    ) -> ProcessingResult:
        log_base = dict(self.settings.base_log_fields(), triggering_message_id=message_id)
        now = self._clock()
        age = (now - published_at).total_seconds() if published_at else None
        logger.info(
            "start",
            extra=fields(log_base, triggering_message_age_seconds=age, triggering_message_timestamp=published_at),
        )
        state = State.RECEIVED
        try:
            if age is not None and age > self.settings.retry_timeout_seconds:
                raise MessageTooOldError(f"message too old: {age:.0f}s")

            message = normalize(raw)
            state = State.NORMALIZED
            step_stack = self._step_stack(message, message_id, published_at, trigger_topic)
            log_base.update(asset_name=message.asset.name, asset_inventory_origin=message.origin)

            if message.deleted:
                self._reconcile_deleted(message, log_base)
                state = State.RECONCILED
                status = self._status(message, compliant=True, step_stack=step_stack)
                violations: List[Violation] = []
            else:
                self._enrich(message)
                state = State.RESOLVED
                matches = self.evaluator.evaluate([message.asset])
                state = State.EVALUATED
                violations = self._violations(matches, message, step_stack)
                status = self._status(message, compliant=not violations, step_stack=step_stack)

            for number, violation in enumerate(violations):
                self.publisher.publish(violation.to_dict(), self.settings.violation_topic)
                logger.info(
                    f"not_compliant {status.asset_name} violationNum {number}",
                    extra=fields(
                        log_base,
                        description=f"origin {status.asset_inventory_origin} timestamp "
                        f"{format_timestamp(status.asset_inventory_timestamp)}",
                        rule=violation.constraint_config.name,
                    ),
                )
            self.publisher.publish(status.to_dict(), self.settings.compliance_status_topic)
            state = State.PUBLISHED
        except ControlMessage as exc:
            logger.info("cancel", extra=fields(log_base, description=f"ignored message: {exc}"))
            return ProcessingResult(state=State.SKIPPED, reason=str(exc))
        except MonitorError as exc:
            return self._failure(exc, state, log_base)

        if status.compliant:
            verdict = "deleted" if status.deleted else "compliant"
            logger.info(
                f"{verdict} {status.asset_name}",
                extra=fields(log_base, description=f"timestamp {format_timestamp(status.asset_inventory_timestamp)}"),
            )
        finished = self._clock()
        logger.info(
            f"finish {'compliant' if status.compliant else 'not_compliant'} {status.asset_name}",
            extra=fields(
                log_base,
                description=f"number of violations {len(violations)}",
                latency_seconds=(finished - published_at).total_seconds() if published_at else None,
                latency_e2e_seconds=_latency(step_stack, finished),
                step_stack=[step.to_dict() for step in step_stack],
            ),
        )
        return ProcessingResult(state=State.DONE, status=status, violations=violations)

    def _failure(self, exc: MonitorError, state: State, log_base: Dict[str, Any]) -> ProcessingResult:
        if is_retryable(exc):
            logger.critical("redo_on_transient", extra=fields(log_base, description=str(exc), state=state.value))
            return ProcessingResult(state=State.FAILED, reason=str(exc))
        logger.critical("noretry", extra=fields(log_base, description=str(exc), state=state.value))
        return ProcessingResult(state=State.ABORTED, reason=str(exc))

    def _step_stack(
        self,
        message: FeedMessage,
        message_id: str,
        published_at: Optional[datetime],
        trigger_topic: str,
    ) -> List[Step]:
        stack = list(message.step_stack)
        if not stack and message.start_time is not None:
            stack.append(
                Step(
                    step_id=f"{message.asset.name}/{format_timestamp(message.start_time)}",
                    step_timestamp=message.start_time,
                )
            )
        if message_id or published_at:
            step_id = f"{trigger_topic}/{message_id}" if trigger_topic else message_id
            stack.append(Step(step_id=step_id, step_timestamp=published_at))
        return stack

    def _reconcile_deleted(self, message: FeedMessage, log_base: Dict[str, Any]) -> None:
        """Fill the gaps of a bare deletion event from the cached document.

        An unreadable cached document leaves the event as it arrived.
        """

        asset = message.asset
        if self.cache is None or (asset.asset_type and asset.ancestors):
            return
        key = cache_key(asset.name)
        document = self.cache.get(key)
        if not document:
            return
        try:
            cached = FeedMessage.from_dict(document).asset
        except MalformedInputError as exc:
            logger.warning(
                "cached document unreadable, deletion not reconciled",
                extra=fields(log_base, cache_key=key, description=str(exc)),
            )
            return
        asset.asset_type = asset.asset_type or cached.asset_type
        asset.ancestors = asset.ancestors or cached.ancestors
        asset.ancestry_path = asset.ancestry_path or cached.ancestry_path

    def _enrich(self, message: FeedMessage) -> None:
        asset = message.asset
        resolved = self.resolver.resolve(asset.ancestors)
        asset.ancestry_path = build_ancestry_path(asset.ancestors)
        asset.ancestors_display_name = resolved.display_names
        asset.ancestry_path_display_name = build_ancestry_path(resolved.display_names)
        asset.project_id = resolved.project_id or asset.project_id
        asset.owner = label_value(asset.resource, self.settings.owner_label_key)
        asset.violation_resolver = label_value(asset.resource, self.settings.violation_resolver_label_key)

    def _violations(
        self, matches: List[RawMatch], message: FeedMessage, step_stack: List[Step]
    ) -> List[Violation]:
        if not matches:
            return []
        rego_modules = self.evaluator.rule_sources()
        function_config = FunctionConfig(
            function_name=self.settings.function_name,
            deployment_time=self.settings.deployment_time,
            project_id=self.settings.project_id,
            environment=self.settings.environment,
        )
        return [
            project_violation(match, message, function_config, rego_modules, step_stack)
            for match in matches
        ]

    def _status(self, message: FeedMessage, *, compliant: bool, step_stack: List[Step]) -> ComplianceStatus:
        return ComplianceStatus(
            asset_name=message.asset.name,
            asset_inventory_timestamp=message.start_time,
            asset_inventory_origin=message.origin,
            rule_name=self.settings.function_name,
            rule_deployment_timestamp=self.settings.deployment_time,
            compliant=compliant or message.deleted,
            deleted=message.deleted,
            step_stack=step_stack,
        )


def _latency(step_stack: List[Step], now: datetime) -> Optional[float]:
    if not step_stack or step_stack[0].step_timestamp is None:
        return None
    return (now - step_stack[0].step_timestamp).total_seconds()


__all__ = [
    "ComplianceMonitor",
    "ProcessingResult",
    "State",
    "project_violation",
]
