"""
Utility Nodes - Transform and Combine executors.

Both take a multi-connection input, so their input value is a list of
upstream outputs in connection order.
"""

from __future__ import annotations

import json
from typing import Any, Callable

from computeflow.core.errors import WorkerError
from computeflow.core.execution import WorkerContext, WorkerResult


def _map_text(value: Any, fn: Callable[[str], str]) -> Any:
    if isinstance(value, str):
        return fn(value)
    if isinstance(value, list):
        return [_map_text(item, fn) for item in value]
    if isinstance(value, dict):
        return {key: _map_text(item, fn) for key, item in value.items()}
    return value


TRANSFORM_OPERATIONS: dict[str, Callable[[Any], Any]] = {
    "passthrough": lambda value: value,
    "uppercase": lambda value: _map_text(value, str.upper),
    "lowercase": lambda value: _map_text(value, str.lower),
    "to_json": lambda value: json.dumps(value, default=str),
}


def _single_or_list(values: Any) -> Any:
    if isinstance(values, list) and len(values) == 1:
        return values[0]
    return values


async def transform_executor(
    inputs: dict[str, Any],
    params: dict[str, Any],
    context: WorkerContext,
) -> WorkerResult:
    """Apply the configured operation to the input (one value, or a list)."""
    operation = params.get("operation", "passthrough")
    fn = TRANSFORM_OPERATIONS.get(operation)
    if fn is None:
        raise WorkerError(
            f"Unknown transform operation: {operation!r} "
            f"(expected one of {', '.join(TRANSFORM_OPERATIONS)})"
        )
    return WorkerResult(output=fn(_single_or_list(inputs.get("input"))))


async def combine_executor(
    inputs: dict[str, Any],
    params: dict[str, Any],
    context: WorkerContext,
) -> WorkerResult:
    """
    Combine several inputs into one value.

    Text values are joined with blank lines; otherwise list values are
    flattened; otherwise the inputs are returned as a dict.
    """
    values = inputs.get("inputs") or []
    if not isinstance(values, list):
        values = [values]

    texts = [v for v in values if isinstance(v, str)]
    if texts:
        return WorkerResult(output="\n\n".join(texts))

    flattened = [item for v in values if isinstance(v, list) for item in v]
    if flattened:
        return WorkerResult(output=flattened)

    return WorkerResult(output=dict(inputs))
