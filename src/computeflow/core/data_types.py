"""
Data Types - The closed set of data kinds that flow along edges.

Each port carries a DataType; the compatibility rule decides which output
ports may feed which input ports.
"""

from __future__ import annotations

from enum import Enum


class DataType(Enum):
    """
    Enumeration of data types that can flow through node connections.

    Values are the lowercase names used in persisted graph documents.
    """
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    TENSOR = "tensor"
    JSON = "json"

    # Wildcard (for utility nodes)
    ANY = "any"

    def is_compatible_with(self, other: DataType) -> bool:
        """Check if an output of this type can connect to an input of `other`."""
        if self == DataType.ANY or other == DataType.ANY:
            return True
        return self == other

    @classmethod
    def parse(cls, value: str | DataType) -> DataType:
        """Parse a persisted type name (case-insensitive)."""
        if isinstance(value, DataType):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(f"Unknown data type: {value!r}") from None


def compatible(output_type: DataType, input_type: DataType) -> bool:
    """
    Decide whether an output port type may feed an input port type.

    `any` is a wildcard in either position; everything else must match
    exactly. There is no implicit coercion (e.g. image -> tensor): a
    mismatch is fixed by changing node kinds or inserting a Transform node.
    """
    return output_type.is_compatible_with(input_type)
