"""
JSON utilities for request bodies and DynamoDB number types.
"""

import json
from decimal import Decimal
from typing import Any, Dict, Optional


def parse_body(body: Any) -> Dict[str, Any]:
    """Parse an API Gateway request body.

    Args:
        body: Raw body, either a JSON string, an already decoded dict or None

    Returns:
        Decoded body as a dictionary

    Raises:
        ValueError: If the body is not a JSON object
    """
    if body is None or body == '':
        return {}
    if isinstance(body, dict):
        return body
    decoded = json.loads(body)
    if not isinstance(decoded, dict):
        raise ValueError('Request body must be a JSON object')
    return decoded


def to_dynamo(value: Any) -> Any:
    """Convert floats to Decimal recursively, as the DynamoDB resource API requires."""
    if isinstance(value, bool):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: to_dynamo(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_dynamo(v) for v in value]
    return value


def from_dynamo(value: Any) -> Any:
    """Convert DynamoDB Decimals back to int or float, and sets to sorted lists."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: from_dynamo(v) for k, v in value.items()}
    if isinstance(value, list):
        return [from_dynamo(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return sorted(from_dynamo(v) for v in value)
    return value


def dumps(value: Any, indent: Optional[int] = None) -> str:
    """Serialize a response body, tolerating Decimals and sets left in store items."""
    return json.dumps(from_dynamo(value), indent=indent, default=str)
