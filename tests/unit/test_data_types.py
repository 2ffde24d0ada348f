"""
Tests for data types and the compatibility rule.
"""

import itertools

import pytest

from computeflow.core.data_types import DataType, compatible


CONCRETE = [t for t in DataType if t != DataType.ANY]


class TestCompatible:
    """Exhaustive pairing over DataType."""

    @pytest.mark.parametrize("output_type,input_type", list(itertools.product(DataType, DataType)))
    def test_every_pair(self, output_type, input_type):
        expected = (
            output_type == DataType.ANY
            or input_type == DataType.ANY
            or output_type == input_type
        )
        assert compatible(output_type, input_type) is expected

    def test_any_is_wildcard_both_ways(self):
        for t in DataType:
            assert compatible(DataType.ANY, t)
            assert compatible(t, DataType.ANY)

    def test_no_implicit_coercion(self):
        assert not compatible(DataType.IMAGE, DataType.TENSOR)
        assert not compatible(DataType.TEXT, DataType.JSON)

    def test_symmetric(self):
        for a, b in itertools.product(DataType, DataType):
            assert compatible(a, b) == compatible(b, a)


class TestParse:

    def test_parse_lowercase_names(self):
        assert DataType.parse("image") == DataType.IMAGE
        assert DataType.parse("ANY") == DataType.ANY
        assert DataType.parse(DataType.TEXT) == DataType.TEXT

    def test_parse_unknown(self):
        with pytest.raises(ValueError, match="Unknown data type"):
            DataType.parse("pointcloud")

    def test_values_are_lowercase(self):
        assert all(t.value == t.value.lower() for t in CONCRETE)
