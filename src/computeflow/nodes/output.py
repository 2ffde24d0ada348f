"""
Output Nodes - Final collection point of a graph.
"""

from __future__ import annotations

from typing import Any

from computeflow.core.execution import WorkerContext, WorkerResult


def _flatten(values: list[Any]) -> list[Any]:
    artifacts: list[Any] = []
    for value in values:
        if isinstance(value, list):
            artifacts.extend(_flatten(value))
        elif value is not None:
            artifacts.append(value)
    return artifacts


async def output_executor(
    inputs: dict[str, Any],
    params: dict[str, Any],
    context: WorkerContext,
) -> WorkerResult:
    """
    Execute output node - collects every connected value as an artifact.

    The first string artifact (usually a URL or path) becomes the preview.
    """
    values = inputs.get("input") or []
    if not isinstance(values, list):
        values = [values]
    artifacts = _flatten(values)

    preview = next((a for a in artifacts if isinstance(a, str)), None)
    return WorkerResult(
        output={"format": params.get("format", "auto"), "artifacts": artifacts},
        artifact_ref=preview,
    )
