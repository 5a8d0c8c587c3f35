"""
Attribute diff between an existing directory entry and desired attributes.

Only attributes named in the desired set are considered; attributes that
exist on the entry but are not mentioned are never touched. For each desired
attribute the existing and desired values, trimmed of surrounding whitespace
and with repeated values dropped, decide the operation:

    desired empty,   existing present  -> delete
    desired present, existing empty    -> add (one add per value)
    desired equal to existing          -> nothing
    desired present, existing present  -> replace with all desired values
"""

import logging
from dataclasses import dataclass
from enum import Enum
from numbers import Number
from typing import Any, List, Mapping, Tuple

from vm_ldap_sync.errors import DiffComputationError

logger = logging.getLogger(__name__)


class OperationKind(str, Enum):
    ADD = 'add'
    REPLACE = 'replace'
    DELETE = 'delete'


@dataclass(frozen=True)
class AttributeOperation:
    """One change to one attribute. Deletes carry no values."""
    kind: OperationKind
    attribute: str
    values: Tuple[str, ...] = ()

    def __post_init__(self):
        if self.kind == OperationKind.DELETE and self.values:
            raise DiffComputationError(f"Delete of {self.attribute} must not carry values")
        if self.kind != OperationKind.DELETE and not self.values:
            raise DiffComputationError(f"{self.kind.value.capitalize()} of {self.attribute} must carry a value")

    @classmethod
    def add(cls, attribute: str, *values: str) -> 'AttributeOperation':
        return cls(OperationKind.ADD, attribute, tuple(values))

    @classmethod
    def replace(cls, attribute: str, *values: str) -> 'AttributeOperation':
        return cls(OperationKind.REPLACE, attribute, tuple(values))

    @classmethod
    def delete(cls, attribute: str) -> 'AttributeOperation':
        return cls(OperationKind.DELETE, attribute)


def normalize_values(attribute: str, value: Any) -> List[str]:
    """
    Turn a scalar or sequence into a list of trimmed strings.

    Raises:
        DiffComputationError: For values that cannot be expressed as strings
    """
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        items = list(value)
    else:
        items = [value]

    normalized = []
    for item in items:
        if isinstance(item, bytes):
            item = item.decode('utf-8')
        elif isinstance(item, bool) or not isinstance(item, (str, Number)):
            raise DiffComputationError(
                f"Could not calculate LDAP operation for attribute {attribute}: "
                f"unsupported value type {type(item).__name__}"
            )
        text = str(item).strip()
        if text:
            normalized.append(text)
    return normalized


def _unique(values: List[str]) -> List[str]:
    """Drop repeated values, keeping first occurrences. LDAP attribute values form a set."""
    return list(dict.fromkeys(values))


def _lookup(existing: Mapping[str, Any], attribute: str) -> Any:
    if attribute in existing:
        return existing[attribute]
    lowered = attribute.lower()
    for name, values in existing.items():
        if name.lower() == lowered:
            return values
    return None


def compute_operations(existing: Mapping[str, Any], desired: Mapping[str, Any]) -> List[AttributeOperation]:
    """
    Compute the operations that turn ``existing`` into ``desired``.

    Args:
        existing: Current entry attributes, name -> values. A DirectoryEntry's
            ``attributes`` mapping works directly.
        desired: Desired attributes, name -> scalar or sequence

    Returns:
        Operations in desired-attribute order
    """
    operations: List[AttributeOperation] = []

    for attribute, desired_value in desired.items():
        new_values = _unique(normalize_values(attribute, desired_value))
        current_values = _unique(normalize_values(attribute, _lookup(existing, attribute)))

        if not new_values and current_values:
            operations.append(AttributeOperation.delete(attribute))
        elif new_values and not current_values:
            # every value gets its own add, some servers reject multi-value adds
            for value in new_values:
                operations.append(AttributeOperation.add(attribute, value))
        elif sorted(new_values) == sorted(current_values):
            logger.debug(f"No op for LDAP entry attribute ({attribute}) since existing value already equals new value.")
        elif new_values and current_values:
            operations.append(AttributeOperation.replace(attribute, *new_values))
        else:
            raise DiffComputationError(
                f"Could not calculate LDAP operation for LDAP entry attribute ({attribute}). This should never happen."
            )

    logger.debug(f"Computed {len(operations)} LDAP attribute operations")
    return operations
