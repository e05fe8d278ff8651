"""
Attribute diffing between recorded and desired object state.

Given the attributes and object classes last recorded for an object and the
ones now declared, this module works out the modify operations that bring the
directory entry to the declared state. Object classes are only ever added.
Attribute types listed in ``ignore_changes`` are left alone entirely.
"""

import logging
from typing import Dict, List, Iterable, Optional, Set

from ldap_reconcile.models import (
    ObjectState,
    MutationOp,
    AddAttribute,
    ReplaceAttribute,
    DeleteAttribute,
    AddObjectClasses,
)

logger = logging.getLogger(__name__)


def is_ignored(attribute_type: str, ignore_list: Optional[Iterable[str]]) -> bool:
    """
    Check whether an attribute type is excluded from management.

    The comparison is case-sensitive and matches the configured names exactly.

    Args:
        attribute_type: Attribute type name
        ignore_list: Configured ``ignore_changes`` names

    Returns:
        True if the attribute must not be diffed, read back or changed
    """
    if not ignore_list:
        return False
    return attribute_type in ignore_list


def diff_object_classes(observed: List[str], desired: List[str]) -> List[MutationOp]:
    """Return a single AddObjectClasses op for classes not yet present, if any."""
    to_add = [cls for cls in desired if cls not in observed]
    # Keep declaration order but drop repeats
    to_add = list(dict.fromkeys(to_add))
    if not to_add:
        return []
    logger.debug(f"Adding object classes {to_add}")
    return [AddObjectClasses(values=tuple(to_add))]


def diff_attributes(observed: Dict[str, List[str]],
                    desired: Dict[str, List[str]],
                    ignore: Optional[Iterable[str]] = None) -> List[MutationOp]:
    """
    Compare two attribute mappings and return the operations to converge them.

    Attributes present on both sides are compared as value sets; any
    difference replaces the whole value list with the desired one. Attributes
    only observed are deleted, attributes only desired are added. Deletions
    and replacements come before additions.

    Args:
        observed: Attribute type to values as last recorded
        desired: Attribute type to values as declared
        ignore: Attribute types to skip in both passes

    Returns:
        List of mutation operations, empty when already converged
    """
    ignore = set(ignore or ())
    ops = []

    for attribute_type, observed_values in observed.items():
        if is_ignored(attribute_type, ignore):
            continue

        if attribute_type in desired:
            desired_values = desired[attribute_type]
            if set(observed_values) != set(desired_values):
                logger.debug(f"Changing attribute {attribute_type}")
                ops.append(ReplaceAttribute(attribute_type, tuple(desired_values)))
        else:
            logger.debug(f"Removing attribute {attribute_type}")
            ops.append(DeleteAttribute(attribute_type))

    for attribute_type, desired_values in desired.items():
        if is_ignored(attribute_type, ignore):
            continue
        if attribute_type not in observed:
            logger.debug(f"Adding attribute {attribute_type}")
            ops.append(AddAttribute(attribute_type, tuple(desired_values)))

    return ops


def ignored_types(observed: ObjectState, desired: ObjectState) -> Set[str]:
    """Attribute types ignored by either snapshot."""
    return set(observed.ignore_changes or ()) | set(desired.ignore_changes or ())


def compute_diff(observed: ObjectState, desired: ObjectState) -> List[MutationOp]:
    """
    Work out the modify operations turning ``observed`` into ``desired``.

    Both states must share the same DN; a DN change is a recreate and is
    handled by the lifecycle controller, not here.

    Returns:
        Object class additions first, then attribute operations
    """
    ops = diff_object_classes(observed.object_classes, desired.object_classes)
    ops.extend(diff_attributes(observed.attributes, desired.attributes, ignored_types(observed, desired)))
    return ops
