"""
Create, update and delete the directory entries that belong to a VM.

Creating an entry is split across invocations when the directory has not yet
replicated the new entry: the add is issued once, then the caller is asked to
come back later with the returned RetryState, and only the search is
repeated until the entry shows up.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Mapping, Optional, Sequence

from vm_ldap_sync.config import DirectoryConfig, DEFAULT_REPLICATION_RETRY_SECONDS
from vm_ldap_sync.diff import AttributeOperation, compute_operations
from vm_ldap_sync.directory import DirectoryConnection, DirectoryEntry
from vm_ldap_sync.errors import AddError, AmbiguousEntry, DeletionError, ModifyError, NotFound
from vm_ldap_sync.locator import ConnectionFactory, EntryLocator
from vm_ldap_sync.platform import VirtualMachine
from vm_ldap_sync.retry import RetryState

logger = logging.getLogger(__name__)


class EntryState(str, Enum):
    NOT_CREATED = 'not_created'
    CREATING = 'creating'
    AWAITING_REPLICATION = 'awaiting_replication'
    CREATED = 'created'
    FAILED = 'failed'
    UPDATING = 'updating'
    UPDATE_FAILED = 'update_failed'
    DELETING = 'deleting'
    DELETED = 'deleted'
    DELETION_FAILED = 'deletion_failed'


@dataclass
class CreateResult:
    """
    Result of one create invocation.

    When ``state`` is AWAITING_REPLICATION the caller must persist
    ``retry_state`` and invoke create again after ``retry_after`` seconds.
    """
    state: EntryState
    entries: List[DirectoryEntry] = field(default_factory=list)
    retry_state: RetryState = field(default_factory=RetryState)
    retry_after: Optional[int] = None

    @property
    def awaiting_replication(self) -> bool:
        return self.state == EntryState.AWAITING_REPLICATION


@dataclass
class UpdateResult:
    state: EntryState
    dn: str
    operations: List[AttributeOperation] = field(default_factory=list)


@dataclass
class DeleteResult:
    state: EntryState
    deleted: List[str] = field(default_factory=list)


class EntryLifecycleManager:
    """Orchestrates entry creation, attribute updates and deletion."""

    def __init__(self, config: DirectoryConfig, connection_factory: Optional[ConnectionFactory] = None,
                 locator: Optional[EntryLocator] = None,
                 replication_retry_seconds: int = DEFAULT_REPLICATION_RETRY_SECONDS):
        self.config = config
        self.connection_factory = connection_factory or DirectoryConnection
        self.locator = locator or EntryLocator(config, self.connection_factory)
        self.replication_retry_seconds = replication_retry_seconds
        self.state = EntryState.NOT_CREATED

    def create(self, vm: VirtualMachine, dn: Optional[str] = None,
               attributes: Optional[Mapping[str, Any]] = None,
               retry_state: Optional[RetryState] = None) -> CreateResult:
        """
        Add the entry for a VM and wait for it to become visible.

        Args:
            vm: VM the entry belongs to
            dn: DN of the new entry, may be omitted when resuming
            attributes: Attributes of the new entry, may be omitted when resuming
            retry_state: State returned by a previous AWAITING_REPLICATION result

        Returns:
            CREATED with the found entries, or AWAITING_REPLICATION with the
            state to persist

        Raises:
            BindError: If the bind fails
            AddError: If the directory rejects the add
        """
        retry_state = retry_state or RetryState()
        if retry_state.retrying:
            dn = dn or retry_state.dn
            attributes = attributes if attributes is not None else retry_state.attributes
        attributes = dict(attributes or {})

        self.state = EntryState.CREATING
        try:
            with self.connection_factory(self.config) as directory:
                if not retry_state.retrying:
                    if not directory.add(dn, attributes):
                        raise AddError(f"Unable to add LDAP entry for {dn}. LDAP Error = {directory.last_error}")
                    logger.info(f"Added LDAP entry {dn} for VM {vm.name}")
                else:
                    logger.info(f"Resuming creation of LDAP entry {dn}, skipping add")

                entries = self.locator.find(directory, vm=vm, require=False)
        except Exception:
            self.state = EntryState.FAILED
            raise

        if entries:
            self.state = EntryState.CREATED
            return CreateResult(state=self.state, entries=entries, retry_state=RetryState.cleared())

        logger.info(f"New LDAP entry not found. Retrying in {self.replication_retry_seconds} seconds.")
        self.state = EntryState.AWAITING_REPLICATION
        return CreateResult(
            state=self.state,
            retry_state=RetryState(retrying=True, attributes=attributes, dn=dn),
            retry_after=self.replication_retry_seconds,
        )

    def update(self, vm: VirtualMachine, entries: Sequence[DirectoryEntry],
               desired: Mapping[str, Any]) -> UpdateResult:
        """
        Bring the VM's single entry in line with ``desired``.

        Raises:
            NotFound: If the VM has no entry
            AmbiguousEntry: If the VM has more than one entry
            BindError: If the bind fails
            ModifyError: If the directory rejects the modify
        """
        if not entries:
            raise NotFound(f"No existing LDAP entry for VM ({vm.name}) was found")
        if len(entries) > 1:
            raise AmbiguousEntry(
                f"More then one existing LDAP entry for VM ({vm.name}) was found, unsure how to handle this case."
            )
        entry = entries[0]

        self.state = EntryState.UPDATING
        operations = compute_operations(entry.attributes, desired)
        if not operations:
            logger.info(f"No LDAP entry attribute operations to perform on DN: {entry.dn}")
            self.state = EntryState.CREATED
            return UpdateResult(state=self.state, dn=entry.dn)

        try:
            with self.connection_factory(self.config) as directory:
                if not directory.modify(entry.dn, operations):
                    raise ModifyError(f"Failed to perform LDAP entry attribute operations on {entry.dn}. "
                                      f"LDAP Error = {directory.last_error}")
        except Exception:
            self.state = EntryState.UPDATE_FAILED
            raise

        logger.info(f"Modified LDAP entry attributes: dn={entry.dn}, operations={len(operations)}")
        self.state = EntryState.CREATED
        return UpdateResult(state=self.state, dn=entry.dn, operations=operations)

    def delete(self, entries: Sequence[DirectoryEntry]) -> DeleteResult:
        """
        Delete every entry, attempting all of them even after a failure.

        Raises:
            BindError: If the bind fails
            DeletionError: Listing every entry that could not be deleted
        """
        if not entries:
            logger.info("No LDAP entries to delete")
            self.state = EntryState.DELETED
            return DeleteResult(state=self.state)

        self.state = EntryState.DELETING
        deleted = []
        failures = []
        try:
            with self.connection_factory(self.config) as directory:
                for entry in entries:
                    if directory.delete(entry.dn):
                        logger.info(f"Successfully deleted LDAP entry: {entry.dn}")
                        deleted.append(entry.dn)
                    else:
                        failures.append((entry.dn, directory.last_error or 'unknown error'))
        except Exception:
            self.state = EntryState.DELETION_FAILED
            raise

        if failures:
            self.state = EntryState.DELETION_FAILED
            raise DeletionError(failures)

        self.state = EntryState.DELETED
        return DeleteResult(state=self.state, deleted=deleted)
