"""
Data records exchanged between configuration, the directory and the reconciler.

Desired and recorded state arrive as loosely typed mappings (YAML declarations,
JSON state files). They are converted into ``ObjectState`` records at the
boundary so the rest of the code works with validated fields only.
"""

import copy
from dataclasses import dataclass, field
from typing import Dict, List, Any, Optional, Tuple

from ldap3 import MODIFY_ADD, MODIFY_DELETE, MODIFY_REPLACE

from ldap_reconcile.logging_setup import SENSITIVE_ATTRIBUTES, MASK

OBJECT_CLASS = 'objectClass'


class ConfigConversionError(ValueError):
    """Raised when a state record cannot be decoded into the expected shapes."""
    pass


@dataclass
class DirectoryObject:
    """An entry as returned by the directory, objectClass split out."""

    dn: str
    object_classes: List[str] = field(default_factory=list)
    attributes: Dict[str, List[str]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'dn': self.dn,
            'object_classes': list(self.object_classes),
            'attributes': {name: list(values) for name, values in self.attributes.items()},
        }


@dataclass
class ObjectState:
    """
    Desired or recorded state of one managed directory object.

    The same record shape is used for the planned state built from
    configuration and for the state persisted after an apply. ``id`` is the
    externally visible identifier and always equals the DN once the object
    exists; it is ``None`` while unknown.
    """

    dn: str
    object_classes: List[str]
    attributes: Dict[str, List[str]] = field(default_factory=dict)
    ignore_changes: List[str] = field(default_factory=list)
    id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> 'ObjectState':
        """
        Build a state record from a configuration or state-file mapping.

        Args:
            data: Mapping with ``dn``, ``object_classes`` and optionally
                ``attributes``, ``ignore_changes`` and ``id``

        Returns:
            Validated ObjectState

        Raises:
            ConfigConversionError: If any field has the wrong shape
        """
        if not isinstance(data, dict):
            raise ConfigConversionError(f"Object definition must be a mapping, got {type(data).__name__}")

        dn = data.get('dn')
        if not isinstance(dn, str) or not dn.strip():
            raise ConfigConversionError("Field 'dn' must be a non-empty string")

        object_classes = _string_list(data.get('object_classes'), 'object_classes')
        if not object_classes:
            raise ConfigConversionError("Field 'object_classes' must list at least one class")

        raw_attributes = data.get('attributes') or {}
        if not isinstance(raw_attributes, dict):
            raise ConfigConversionError("Field 'attributes' must be a mapping of attribute type to values")

        attributes = {}
        for name, values in raw_attributes.items():
            if not isinstance(name, str) or not name:
                raise ConfigConversionError(f"Attribute type {name!r} must be a non-empty string")
            if name.lower() == OBJECT_CLASS.lower():
                raise ConfigConversionError("Use 'object_classes' instead of an objectClass attribute")
            if isinstance(values, str):
                values = [values]
            attributes[name] = _string_list(values, f"attributes.{name}")

        ignore_changes = _string_list(data.get('ignore_changes') or [], 'ignore_changes')

        identifier = data.get('id')
        if identifier is not None and not isinstance(identifier, str):
            raise ConfigConversionError("Field 'id' must be a string")

        return cls(
            dn=dn,
            object_classes=object_classes,
            attributes=attributes,
            ignore_changes=ignore_changes,
            id=identifier,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Return the persisted form of this state."""
        return {
            'id': self.id,
            'dn': self.dn,
            'object_classes': list(self.object_classes),
            'attributes': {name: list(values) for name, values in self.attributes.items()},
            'ignore_changes': list(self.ignore_changes),
        }

    def copy(self) -> 'ObjectState':
        return copy.deepcopy(self)


def _string_list(value: Any, field_name: str) -> List[str]:
    if not isinstance(value, (list, tuple)):
        raise ConfigConversionError(f"Field '{field_name}' must be a list of strings")
    result = []
    for item in value:
        if not isinstance(item, str):
            raise ConfigConversionError(f"Field '{field_name}' contains non-string value {item!r}")
        result.append(item)
    return result


@dataclass(frozen=True)
class MutationOp:
    """A single change against one attribute type of a directory entry."""

    attribute: str
    values: Tuple[str, ...] = ()

    operation = None
    verb = 'change'

    def to_change(self) -> Tuple[str, Tuple[int, List[str]]]:
        """Return the ``(attribute, (operation, values))`` pair ldap3 expects in a modify."""
        return self.attribute, (self.operation, list(self.values))

    def describe(self) -> str:
        """Human readable form for plan output; secret values are masked."""
        if self.values:
            values = list(self.values)
            if self.attribute in SENSITIVE_ATTRIBUTES:
                values = [MASK] * len(values)
            return f"{self.verb} {self.attribute}: {values}"
        return f"{self.verb} {self.attribute}"


@dataclass(frozen=True)
class AddAttribute(MutationOp):
    operation = MODIFY_ADD
    verb = 'add'


@dataclass(frozen=True)
class ReplaceAttribute(MutationOp):
    operation = MODIFY_REPLACE
    verb = 'replace'


@dataclass(frozen=True)
class DeleteAttribute(MutationOp):
    """Delete the given values, or every value of the type when none are given."""

    operation = MODIFY_DELETE
    verb = 'delete'


@dataclass(frozen=True)
class AddObjectClasses(MutationOp):
    attribute: str = OBJECT_CLASS
    operation = MODIFY_ADD
    verb = 'add'

    @property
    def classes(self) -> List[str]:
        return list(self.values)
