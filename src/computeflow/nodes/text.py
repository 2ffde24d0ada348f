"""
Text Nodes - Prompt, Text and Comment executors.

These run locally: they emit their text parameter, or forward text coming
in from upstream.
"""

from __future__ import annotations

from typing import Any

from computeflow.core.execution import WorkerContext, WorkerResult


async def prompt_executor(
    inputs: dict[str, Any],
    params: dict[str, Any],
    context: WorkerContext,
) -> WorkerResult:
    """Execute prompt node - simply passes the prompt parameter to output."""
    return WorkerResult(output=str(params.get("prompt", "")))


async def text_executor(
    inputs: dict[str, Any],
    params: dict[str, Any],
    context: WorkerContext,
) -> WorkerResult:
    """
    Execute text node.

    The `text` parameter wins; with no text set, a connected `input` is
    forwarded unchanged. Context values are appended after a blank line.
    """
    text = params.get("text") or inputs.get("input") or ""
    if not isinstance(text, str):
        text = str(text)

    context = inputs.get("context") or []
    if not isinstance(context, list):
        context = [context]
    context_values = [v for v in context if isinstance(v, str) and v]
    if context_values:
        text = "\n\n".join([text, *context_values]) if text else "\n\n".join(context_values)
    return WorkerResult(output=text)


async def comment_executor(
    inputs: dict[str, Any],
    params: dict[str, Any],
    context: WorkerContext,
) -> WorkerResult:
    # Canvas annotation only
    return WorkerResult(output=None)
