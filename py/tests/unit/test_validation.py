from __future__ import annotations

import pytest

from ctdynamo_py import ConfigurationError
from ctdynamo_py.validation import (
    MaxAttributeNameLength,
    MaxTableNameLength,
    NameValidationError,
    validate_attribute_name,
    validate_index_name,
    validate_table_name,
)


def test_name_validation_error_is_a_configuration_error() -> None:
    err = NameValidationError(type="InvalidTableName", detail="detail")
    assert isinstance(err, ConfigurationError)
    assert str(err) == "name validation failed: InvalidTableName: detail"
    assert err.type == "InvalidTableName"
    assert err.detail == "detail"


def test_validate_table_names() -> None:
    for name in ["users_table", "users-table", "users.table", "abc", "a" * MaxTableNameLength]:
        validate_table_name(name)

    for bad in [None, "", "ab", "a" * (MaxTableNameLength + 1), "bad name", "users;drop"]:
        with pytest.raises(NameValidationError) as exc:
            validate_table_name(bad)
        assert exc.value.type == "InvalidTableName"


def test_validate_index_names() -> None:
    validate_index_name(None)
    validate_index_name("")
    validate_index_name("by-owner")

    for bad in ["ix", "bad name", "gsi/owner"]:
        with pytest.raises(NameValidationError) as exc:
            validate_index_name(bad)
        assert exc.value.type == "InvalidIndexName"


def test_validate_attribute_names() -> None:
    for name in ["PK", "user id", "nested.field", "ünïcode", "a" * MaxAttributeNameLength]:
        validate_attribute_name(name)

    for bad in [None, "", "a" * (MaxAttributeNameLength + 1), "ok\0bad", "tab\there", "del\x7f"]:
        with pytest.raises(NameValidationError) as exc:
            validate_attribute_name(bad)
        assert exc.value.type == "InvalidAttribute"
