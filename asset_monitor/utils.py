"""Shared helpers for AWS backed collaborators."""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Iterator

import boto3
from botocore.exceptions import ClientError, OperationNotPageableError


def safe_paginate(client: boto3.client, method_name: str, result_key: str, **kwargs) -> Iterator[dict]:
    """Iterate through paginated boto3 results while handling pagination gaps."""

    try:
        paginator = client.get_paginator(method_name)
    except OperationNotPageableError:
        response = getattr(client, method_name)(**kwargs)
        for item in response.get(result_key, []):
            yield item
        return

    for page in paginator.paginate(**kwargs):
        for item in page.get(result_key, []):
            yield item



def error_code(exc: Exception) -> str:
    """Return the AWS error code carried by *exc*, ``""`` when there is none."""

    if isinstance(exc, ClientError):
        return str(exc.response.get("Error", {}).get("Code", ""))
    return ""


def to_dynamo(value: Any) -> Any:
    """Convert floats to :class:`~decimal.Decimal` for the DynamoDB serializer."""

    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: to_dynamo(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_dynamo(v) for v in value]
    return value


def from_dynamo(value: Any) -> Any:
    """Undo :func:`to_dynamo`, turning decimals back into ints or floats.

    A decimal with a fractional exponent (``Decimal("1.0")``) came from a float
    and is returned as one. DynamoDB itself may strip trailing zeros, in which
    case a whole float such as ``1.0`` reads back as ``1``; consumers compare
    numbers by value so that loss is accepted.
    """

    if isinstance(value, Decimal):
        if not value.is_finite() or value.as_tuple().exponent < 0:
            return float(value)
        return int(value)
    if isinstance(value, dict):
        return {k: from_dynamo(v) for k, v in value.items()}
    if isinstance(value, list):
        return [from_dynamo(v) for v in value]
    return value


__all__ = ["error_code", "from_dynamo", "safe_paginate", "to_dynamo"]
