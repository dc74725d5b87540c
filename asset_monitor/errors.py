"""Failure taxonomy for the compliance pipeline.

Every failure is either *no-retry* (log and acknowledge the inbound message)
or *retryable* (propagate so the bus redelivers the message). Call sites raise
the narrowest class below and the controller decides what to do with it.
"""
from __future__ import annotations

from botocore.exceptions import BotoCoreError, ClientError, EndpointConnectionError


class MonitorError(Exception):
    """Base class for pipeline failures."""

    retryable = False


class NoRetryError(MonitorError):
    """Failure that will not go away on redelivery."""


class RetryableError(MonitorError):
    """Failure that is plausibly transient."""

    retryable = True


class MalformedInputError(NoRetryError):
    """Inbound bytes do not parse as a known feed message shape."""


class EmptyAssetError(NoRetryError):
    """Asset carries neither a resource nor an IAM policy payload."""


class MessageTooOldError(NoRetryError):
    """Inbound message is past its useful retry window."""


class RuleConfigurationError(NoRetryError):
    """Rule or constraint definitions cannot be loaded."""


class ResultSchemaError(NoRetryError):
    """Policy engine output does not match the expected result set shape."""


class SerializationError(NoRetryError):
    """An already computed record cannot be serialized."""


class TransportError(RetryableError):
    """Cache store, hierarchy API or message bus call failed."""


class EvaluationError(MonitorError):
    """Policy engine failed while evaluating."""

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class ControlMessage(Exception):
    """Inbound message is a control notice, not an asset change."""


_TRANSIENT_BOTO_ERRORS = (ClientError, EndpointConnectionError, BotoCoreError)


def is_retryable(exc: BaseException) -> bool:
    """Return ``True`` when *exc* should trigger a redelivery."""

    if isinstance(exc, MonitorError):
        return exc.retryable
    return isinstance(exc, _TRANSIENT_BOTO_ERRORS)


__all__ = [
    "ControlMessage",
    "EmptyAssetError",
    "EvaluationError",
    "MalformedInputError",
    "MessageTooOldError",
    "MonitorError",
    "NoRetryError",
    "ResultSchemaError",
    "RetryableError",
    "RuleConfigurationError",
    "SerializationError",
    "TransportError",
    "is_retryable",
]
