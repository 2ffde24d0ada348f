"""
Backends package - aiohttp clients for remote services.

- generation: HttpGenerationWorker for Image/Video/Audio nodes
- store: HttpGraphStore for graph documents
"""

from computeflow.backends.generation import HttpGenerationWorker
from computeflow.backends.store import HttpGraphStore


__all__ = [
    "HttpGenerationWorker",
    "HttpGraphStore",
]
