"""Unit tests for references.py - cross-resource references."""

import pytest

from references import (
    UNKNOWN,
    Reference,
    contains_reference,
    contains_unknown,
    find_references,
    get_attribute,
    referenced_ids,
    resolve,
)


class TestFindReferences:
    """Tests for finding references in property values."""

    def test_nested_values(self):
        value = {
            "subnets": ["${a.id}", "${b.id}"],
            "endpoint": {"host": "${db.endpoint.address}"},
        }
        refs = find_references(value)
        assert Reference("db", "endpoint.address") in refs
        assert referenced_ids(value) == {"a", "b", "db"}

    def test_interpolated_reference(self):
        refs = find_references("arn:${role.name}:suffix")
        assert refs == [Reference("role", "name")]

    def test_no_references(self):
        assert find_references({"cidr": "10.0.0.0/16", "count": 3}) == []
        assert contains_reference("plain") is False

    def test_expression(self):
        assert Reference("net", "id").expression == "${net.id}"


class TestResolve:
    """Tests for resolve."""

    def test_whole_string_keeps_type(self):
        result = resolve("${db.port}", lambda ref: 5432)
        assert result == 5432

    def test_interpolation(self):
        result = resolve("host-${vm.id}", lambda ref: "i-123")
        assert result == "host-i-123"

    def test_unknown_whole_string(self):
        assert resolve("${net.id}", lambda ref: UNKNOWN) is UNKNOWN

    def test_unknown_interpolated_makes_value_unknown(self):
        assert resolve("prefix-${net.id}", lambda ref: UNKNOWN) is UNKNOWN

    def test_nested(self):
        values = {"net.id": "net-1", "sg.id": "sg-1"}
        result = resolve(
            {"network_id": "${net.id}", "groups": ["${sg.id}"], "n": 1},
            lambda ref: values[f"{ref.resource_id}.{ref.attribute}"],
        )
        assert result == {"network_id": "net-1", "groups": ["sg-1"], "n": 1}

    def test_contains_unknown(self):
        assert contains_unknown({"a": [1, UNKNOWN]}) is True
        assert contains_unknown({"a": [1, 2]}) is False

    def test_unknown_renders_placeholder(self):
        assert str(UNKNOWN) == "(known after apply)"


class TestGetAttribute:
    """Tests for dotted attribute paths."""

    def test_nested_path(self):
        attrs = {"endpoint": {"address": "db.internal", "port": 5432}}
        assert get_attribute(attrs, "endpoint.port") == 5432

    def test_list_index(self):
        assert get_attribute({"ips": ["10.0.0.1", "10.0.0.2"]}, "ips.1") == "10.0.0.2"

    def test_missing_segment(self):
        with pytest.raises(KeyError):
            get_attribute({"endpoint": {}}, "endpoint.address")
