"""
Node Kinds - The closed set of node kinds and their port layouts.

Every kind has exactly one KindSpec describing:
- InputDefinition: input slots, their data type and connection limit
- OutputDefinition: output slots and their data type
- Default parameters, display color and description

The table is checked for completeness at import time, so adding a NodeKind
without a layout fails immediately instead of silently producing a node
with no ports.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from computeflow.core.data_types import DataType


class NodeKind(Enum):
    """Kinds of nodes an author can place in a graph."""
    TEXT = "Text"
    PROMPT = "Prompt"
    IMAGE = "Image"
    VIDEO = "Video"
    AUDIO = "Audio"
    TRANSFORM = "Transform"
    COMBINE = "Combine"
    OUTPUT = "Output"
    COMMENT = "Comment"

    @property
    def is_generation(self) -> bool:
        """True for kinds that call an external AI model."""
        return self in (NodeKind.IMAGE, NodeKind.VIDEO, NodeKind.AUDIO)

    @classmethod
    def parse(cls, value: str | NodeKind) -> NodeKind:
        """Parse a persisted kind name."""
        if isinstance(value, NodeKind):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"Unknown node kind: {value!r}") from None


@dataclass(frozen=True)
class InputDefinition:
    """
    Definition of an input slot on a node kind.

    Attributes:
        name: Slot identifier (used when resolving inputs)
        data_type: Type of data accepted
        max_connections: Edge limit for this input, None for unbounded
        optional: If True, the value may come from params instead
    """
    name: str
    data_type: DataType
    max_connections: int | None = 1
    optional: bool = True


@dataclass(frozen=True)
class OutputDefinition:
    """Definition of an output slot on a node kind."""
    name: str
    data_type: DataType


@dataclass(frozen=True)
class KindSpec:
    """Complete layout of a node kind."""
    kind: NodeKind
    description: str
    inputs: tuple[InputDefinition, ...] = ()
    outputs: tuple[OutputDefinition, ...] = ()
    default_params: dict[str, Any] = field(default_factory=dict)
    color: str = "#94a3b8"

    def get_input(self, name: str) -> InputDefinition | None:
        for inp in self.inputs:
            if inp.name == name:
                return inp
        return None

    def get_output(self, name: str) -> OutputDefinition | None:
        for out in self.outputs:
            if out.name == name:
                return out
        return None


_KIND_SPECS: dict[NodeKind, KindSpec] = {
    NodeKind.TEXT: KindSpec(
        kind=NodeKind.TEXT,
        description="Text input and generation",
        inputs=(
            InputDefinition("input", DataType.TEXT),
            InputDefinition("context", DataType.ANY, max_connections=None),
        ),
        outputs=(OutputDefinition("text", DataType.TEXT),),
        default_params={"text": "", "model": "groq/llama-3.1-8b-instant"},
        color="#f59e0b",
    ),
    NodeKind.PROMPT: KindSpec(
        kind=NodeKind.PROMPT,
        description="Text prompt input node",
        outputs=(OutputDefinition("prompt", DataType.TEXT),),
        default_params={"prompt": ""},
        color="#f59e0b",
    ),
    NodeKind.IMAGE: KindSpec(
        kind=NodeKind.IMAGE,
        description="Generate images using AI models",
        inputs=(
            InputDefinition("prompt", DataType.TEXT),
            InputDefinition("reference", DataType.IMAGE),
            InputDefinition("mask", DataType.IMAGE),
        ),
        outputs=(OutputDefinition("image", DataType.IMAGE),),
        default_params={
            "model": "flux-1.1-pro",
            "aspectRatio": "1:1",
            "numOutputs": 1,
            "guidance": 7.5,
        },
        color="#22c55e",
    ),
    NodeKind.VIDEO: KindSpec(
        kind=NodeKind.VIDEO,
        description="Generate videos from images or prompts",
        inputs=(
            InputDefinition("image", DataType.IMAGE),
            InputDefinition("prompt", DataType.TEXT),
        ),
        outputs=(OutputDefinition("video", DataType.VIDEO),),
        default_params={"model": "luma/dream-machine", "duration": 5, "fps": 24},
        color="#8b5cf6",
    ),
    NodeKind.AUDIO: KindSpec(
        kind=NodeKind.AUDIO,
        description="Generate speech, music or sound effects",
        inputs=(InputDefinition("prompt", DataType.TEXT),),
        outputs=(OutputDefinition("audio", DataType.AUDIO),),
        default_params={"model": "elevenlabs/sound-effects", "duration": 10},
        color="#0ea5e9",
    ),
    NodeKind.TRANSFORM: KindSpec(
        kind=NodeKind.TRANSFORM,
        description="Transform and process data",
        inputs=(InputDefinition("input", DataType.ANY, max_connections=None),),
        outputs=(OutputDefinition("output", DataType.ANY),),
        default_params={"operation": "passthrough"},
        color="#64748b",
    ),
    NodeKind.COMBINE: KindSpec(
        kind=NodeKind.COMBINE,
        description="Combine several inputs into one value",
        inputs=(InputDefinition("inputs", DataType.ANY, max_connections=None),),
        outputs=(OutputDefinition("output", DataType.ANY),),
        color="#64748b",
    ),
    NodeKind.OUTPUT: KindSpec(
        kind=NodeKind.OUTPUT,
        description="Final output collection node",
        inputs=(InputDefinition("input", DataType.ANY, max_connections=None),),
        default_params={"format": "auto"},
        color="#ec4899",
    ),
    NodeKind.COMMENT: KindSpec(
        kind=NodeKind.COMMENT,
        description="Free-form note on the canvas",
        default_params={"text": ""},
        color="#475569",
    ),
}

_missing = set(NodeKind) - set(_KIND_SPECS)
if _missing:
    raise RuntimeError(f"Node kinds without a layout: {sorted(k.value for k in _missing)}")


def kind_spec(kind: NodeKind) -> KindSpec:
    """Get the layout for a node kind."""
    return _KIND_SPECS[kind]


def all_kind_specs() -> list[KindSpec]:
    """Get layouts for every node kind, in declaration order."""
    return [_KIND_SPECS[kind] for kind in NodeKind]
