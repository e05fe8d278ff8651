"""
Lifecycle operations for managed directory objects.

``ObjectController`` drives one object through create, read, update, delete
and import against a ``DirectoryClient``, using the diff engine to work out
in-place updates. It also offers read-only lookups that share the same entry
reading code but apply no ignore filtering.
"""

import logging
from typing import Dict, List, Optional, Iterable

from ldap3 import ALL_ATTRIBUTES

from ldap_reconcile.diff import compute_diff, is_ignored
from ldap_reconcile.ldap_client import DirectoryClient, DirectoryWriteError, DEFAULT_FILTER
from ldap_reconcile.logging_setup import mask_attributes, audit_logger
from ldap_reconcile.models import ObjectState, DirectoryObject, MutationOp

logger = logging.getLogger(__name__)

MODIFY_BATCH = 'batch'
MODIFY_PER_OPERATION = 'per_operation'
MODIFY_MODES = (MODIFY_BATCH, MODIFY_PER_OPERATION)


class ObjectController:
    """
    Reconciles declared object state against the directory.

    The controller holds no state of its own between calls; every read goes
    to the directory and every write is a single synchronous request.
    """

    def __init__(self, client: DirectoryClient, modify_mode: str = MODIFY_BATCH):
        """
        Args:
            client: Connected directory client
            modify_mode: ``batch`` to send all changes of an update in one
                modify request, ``per_operation`` to send one request per change
        """
        if modify_mode not in MODIFY_MODES:
            raise ValueError(f"Unknown modify mode {modify_mode!r}, expected one of {MODIFY_MODES}")
        self.client = client
        self.modify_mode = modify_mode

    def create(self, desired: ObjectState) -> ObjectState:
        """
        Add the object to the directory.

        Every declared attribute is written, including ignored ones; the
        ignore list only takes effect once the object exists.

        Returns:
            State to record, with ``id`` set to the DN

        Raises:
            DirectoryWriteError: If the server rejects the entry
        """
        mask_attributes(desired.attributes)
        logger.info(f"Adding entry {desired.dn} with object classes {desired.object_classes}")
        logger.debug(f"Adding entry {desired.dn} attributes {desired.attributes}")

        try:
            self.client.add(desired.dn, desired.object_classes, desired.attributes)
        except DirectoryWriteError as e:
            audit_logger.log_directory_write('add', desired.dn, False, str(e))
            raise
        audit_logger.log_directory_write('add', desired.dn, True)

        created = desired.copy()
        created.id = desired.dn
        return created

    def read(self, state: ObjectState) -> ObjectState:
        """
        Refresh a recorded state from the directory.

        Attribute types in the recorded ignore list are left out of the
        returned attributes.

        Raises:
            NotFoundOrAmbiguous: If the entry is gone (or the DN is ambiguous)
        """
        logger.debug(f"Reading entry {state.dn}")
        entry = self.client.get_entry(state.dn)
        return self._state_from_entry(entry, state.ignore_changes, recorded_dn=state.dn)

    def import_object(self, dn: str, ignore_changes: Optional[Iterable[str]] = None) -> ObjectState:
        """
        Start managing an existing entry.

        Without an ignore list every attribute becomes managed. When the
        operator supplies one (usually from the object's declaration) those
        attribute types are left out, exactly as a normal read would.

        Raises:
            NotFoundOrAmbiguous: If the entry does not exist
        """
        logger.info(f"Importing entry {dn}")
        entry = self.client.get_entry(dn)
        return self._state_from_entry(entry, list(ignore_changes or []), recorded_dn=dn)

    def _state_from_entry(self, entry: DirectoryObject, ignore_changes: List[str], recorded_dn: str) -> ObjectState:
        # Keep the recorded spelling when the server only changes case
        dn = recorded_dn if entry.dn.lower() == recorded_dn.lower() else entry.dn
        attributes = {
            name: list(values)
            for name, values in entry.attributes.items()
            if not is_ignored(name, ignore_changes)
        }
        return ObjectState(
            dn=dn,
            object_classes=list(entry.object_classes),
            attributes=attributes,
            ignore_changes=list(ignore_changes),
            id=dn,
        )

    def update(self, state: ObjectState, plan: ObjectState) -> ObjectState:
        """
        Bring an existing entry to the planned state.

        A DN change deletes the old entry and creates the planned one, which
        must then be the unadjusted declaration so ignored attributes are
        written too; if the delete fails nothing is created. Otherwise the
        diff between recorded and planned state is sent as modify requests.
        Changes already accepted by the server stay applied when a later one
        fails.

        Returns:
            State to record

        Raises:
            DirectoryWriteError: If any delete, add or modify is rejected
        """
        if state.dn != plan.dn:
            logger.warning(f"Recreating entry because the DN changed: {state.dn} -> {plan.dn}")
            self.delete(state)
            return self.create(plan)

        ops = compute_diff(state, plan)
        if ops:
            mask_attributes(state.attributes)
            mask_attributes(plan.attributes)
            self.apply_operations(plan.dn, ops)
        else:
            logger.debug(f"Entry {plan.dn} already up to date")

        updated = plan.copy()
        updated.id = plan.dn
        return updated

    def apply_operations(self, dn: str, ops: List[MutationOp]):
        """Send mutation operations to the directory according to the modify mode."""
        for op in ops:
            logger.info(f"Modifying {dn}: {op.describe()}")

        if self.modify_mode == MODIFY_BATCH:
            batches = [ops]
        else:
            batches = [[op] for op in ops]

        for applied, batch in enumerate(batches):
            try:
                self.client.modify(dn, [op.to_change() for op in batch])
            except DirectoryWriteError as e:
                audit_logger.log_directory_write('modify', dn, False, str(e))
                if applied:
                    logger.error(f"Modify of {dn} failed after {applied} of {len(batches)} requests were applied")
                raise
        audit_logger.log_directory_write('modify', dn, True, f"{len(ops)} changes")

    def delete(self, state: ObjectState):
        """
        Remove the entry from the directory.

        Raises:
            DirectoryWriteError: If the server refuses; the entry is assumed to still exist
        """
        logger.info(f"Deleting entry {state.dn}")
        try:
            self.client.delete(state.dn)
        except DirectoryWriteError as e:
            audit_logger.log_directory_write('delete', state.dn, False, str(e))
            raise
        audit_logger.log_directory_write('delete', state.dn, True)

    def plan_adjust(self, state: Optional[ObjectState], plan: Optional[ObjectState]) -> Optional[ObjectState]:
        """
        Hide changes to ignored attributes from a plan.

        Every attribute type in the plan's ignore list gets its recorded value
        (or is dropped when nothing is recorded for it), so the plan shows no
        difference for it. The identifier is carried over from the recorded
        state, or marked unknown when the DN changes.

        Returns:
            Adjusted copy of the plan; the plan itself when there is no
            recorded state (create) or no plan (delete)
        """
        if state is None or plan is None:
            return plan

        adjusted = plan.copy()
        adjusted.id = state.id if state.dn == plan.dn else None

        candidates = list(plan.attributes) + [name for name in state.attributes if name not in plan.attributes]
        for attribute_type in candidates:
            if not is_ignored(attribute_type, plan.ignore_changes):
                continue
            if attribute_type in state.attributes:
                adjusted.attributes[attribute_type] = list(state.attributes[attribute_type])
            else:
                adjusted.attributes.pop(attribute_type, None)
        return adjusted

    def lookup(self, dn: str, additional_attributes: Optional[Iterable[str]] = None) -> DirectoryObject:
        """
        Read an entry without managing it.

        Args:
            dn: Entry to read
            additional_attributes: Operational or constructed attributes to
                request on top of all user attributes

        Raises:
            NotFoundOrAmbiguous: If the entry does not exist
        """
        return self.client.get_entry(dn, *(additional_attributes or ()))

    def search(self, base_dn: str, scope: str = 'baseObject', search_filter: Optional[str] = None,
               additional_attributes: Optional[Iterable[str]] = None) -> List[DirectoryObject]:
        """Search entries below ``base_dn`` without managing them."""
        attributes = [ALL_ATTRIBUTES] + list(additional_attributes or ())
        return self.client.search(base_dn, scope, search_filter or DEFAULT_FILTER, attributes)


def summarize_changes(ops: List[MutationOp]) -> Dict[str, int]:
    """Count operations per verb for plan output."""
    summary = {}
    for op in ops:
        summary[op.verb] = summary.get(op.verb, 0) + 1
    return summary
