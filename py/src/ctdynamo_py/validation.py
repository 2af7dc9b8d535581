from __future__ import annotations

import re

from .errors import ConfigurationError

MaxAttributeNameLength = 255
MaxTableNameLength = 255
MinTableNameLength = 3

_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")


class NameValidationError(ConfigurationError):
    def __init__(self, *, type: str, detail: str) -> None:
        super().__init__(f"name validation failed: {type}: {detail}")
        self.type = type
        self.detail = detail


def validate_table_name(name: str | None) -> None:
    if not name:
        raise NameValidationError(type="InvalidTableName", detail="table name is required")

    if len(name) < MinTableNameLength or len(name) > MaxTableNameLength:
        raise NameValidationError(type="InvalidTableName", detail="table name length invalid")

    if _NAME_PATTERN.match(name) is None:
        raise NameValidationError(type="InvalidTableName", detail="table name contains invalid characters")


def validate_index_name(name: str | None) -> None:
    if not name:
        return

    if len(name) < MinTableNameLength or len(name) > MaxTableNameLength:
        raise NameValidationError(type="InvalidIndexName", detail="index name length invalid")

    if _NAME_PATTERN.match(name) is None:
        raise NameValidationError(type="InvalidIndexName", detail="index name contains invalid characters")


def validate_attribute_name(name: str | None) -> None:
    if not name:
        raise NameValidationError(type="InvalidAttribute", detail="attribute name cannot be empty")

    if len(name) > MaxAttributeNameLength:
        raise NameValidationError(type="InvalidAttribute", detail="attribute name exceeds maximum length")

    if _contains_control_characters(name):
        raise NameValidationError(type="InvalidAttribute", detail="attribute name contains control characters")


def _contains_control_characters(value: str) -> bool:
    for ch in value:
        code = ord(ch)
        if 0 <= code <= 0x1F or code == 0x7F:
            return True
    return False
