"""
Node Worker - Routes each node kind to its executor.

Local kinds (Prompt, Text, Comment, Transform, Combine, Output) run in
process. Generation kinds (Image, Video, Audio) are delegated to a
generation worker such as HttpGenerationWorker.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from computeflow.core.errors import WorkerError
from computeflow.core.execution import Worker, WorkerContext, WorkerResult
from computeflow.core.node_kinds import NodeKind
from computeflow.nodes.output import output_executor
from computeflow.nodes.text import comment_executor, prompt_executor, text_executor
from computeflow.nodes.utility import combine_executor, transform_executor

logger = logging.getLogger(__name__)


Executor = Callable[[dict[str, Any], dict[str, Any], WorkerContext], Awaitable[WorkerResult]]


LOCAL_EXECUTORS: dict[NodeKind, Executor] = {
    NodeKind.PROMPT: prompt_executor,
    NodeKind.TEXT: text_executor,
    NodeKind.COMMENT: comment_executor,
    NodeKind.TRANSFORM: transform_executor,
    NodeKind.COMBINE: combine_executor,
    NodeKind.OUTPUT: output_executor,
}

_unrouted = {k for k in NodeKind if not k.is_generation} - set(LOCAL_EXECUTORS)
if _unrouted:
    raise RuntimeError(f"Node kinds without an executor: {sorted(k.value for k in _unrouted)}")


class NodeWorker:
    """
    Worker that dispatches on node kind.

    Unconnected inputs may be supplied through `params["inputs"]`;
    connected values take precedence.
    """

    def __init__(self, generator: Worker | None = None):
        self.generator = generator

    async def invoke(
        self,
        kind: NodeKind,
        params: dict[str, Any],
        inputs: dict[str, Any],
        context: WorkerContext,
    ) -> WorkerResult:
        manual = params.get("inputs")
        if isinstance(manual, dict):
            inputs = {**manual, **inputs}

        context.check_cancelled()

        if kind.is_generation:
            if self.generator is None:
                raise WorkerError("no generation backend configured")
            logger.debug("Delegating %s node %s to generator", kind.value, context.node_id)
            return await self.generator.invoke(kind, params, inputs, context)

        result = await LOCAL_EXECUTORS[kind](inputs, params, context)
        context.report_progress(100)
        return result
