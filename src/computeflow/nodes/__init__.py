"""
Nodes package - Built-in node executors.

- text: Prompt, Text, Comment
- utility: Transform, Combine
- output: Output
- dispatch: NodeWorker, the kind-dispatching worker
"""

from computeflow.nodes.dispatch import LOCAL_EXECUTORS, NodeWorker
from computeflow.nodes.utility import TRANSFORM_OPERATIONS


__all__ = [
    "LOCAL_EXECUTORS",
    "NodeWorker",
    "TRANSFORM_OPERATIONS",
]
