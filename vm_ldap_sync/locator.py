"""
Locate the directory entries that belong to a VM.
"""

import logging
from typing import Any, Callable, List, Optional

from vm_ldap_sync.config import DirectoryConfig
from vm_ldap_sync.directory import DirectoryConnection, DirectoryEntry
from vm_ldap_sync.errors import MissingParameter, NotFound
from vm_ldap_sync.platform import VirtualMachine

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[DirectoryConfig], DirectoryConnection]


class EntryLocator:
    """
    Resolves search parameters and performs bind+search.

    Explicit parameters always win over values derived from the VM or the
    configuration.
    """

    def __init__(self, config: DirectoryConfig, connection_factory: Optional[ConnectionFactory] = None):
        self.config = config
        self.connection_factory = connection_factory or DirectoryConnection

    def resolve_filter_value(self, vm: Optional[VirtualMachine] = None,
                             filter_value: Optional[str] = None) -> str:
        """Explicit value, else the VM's first hostname, else the VM name."""
        if filter_value:
            return filter_value
        if vm is None:
            raise MissingParameter('vm')
        return vm.hostname

    def resolve_treebase(self, treebase: Optional[str] = None) -> str:
        return treebase or self.config.treebase

    def resolve_filter_attribute(self, filter_attribute: Optional[str] = None) -> str:
        return filter_attribute or self.config.hostname_filter

    def find(self, directory: DirectoryConnection, vm: Optional[VirtualMachine] = None,
             filter_value: Optional[str] = None, treebase: Optional[str] = None,
             filter_attribute: Optional[str] = None, scope: Any = None,
             require: bool = True) -> List[DirectoryEntry]:
        """
        Search using an already bound connection.

        Args:
            directory: Bound connection
            vm: VM whose hostname is the default filter value
            filter_value: Explicit filter value
            treebase: Explicit search root
            filter_attribute: Explicit attribute to match on
            scope: 'base', 'one' or 'subtree' (or 0/1/2), subtree by default
            require: Raise NotFound instead of returning an empty list

        Returns:
            Matching entries in server order
        """
        value = self.resolve_filter_value(vm, filter_value)
        base = self.resolve_treebase(treebase)
        attribute = self.resolve_filter_attribute(filter_attribute)

        entries = directory.search(base, attribute, value, scope)
        logger.info(f"Found {len(entries)} LDAP entries for {attribute}={value} under {base}")

        if require and not entries:
            raise NotFound(f"LDAP could not find any entries for {attribute}={value}")
        return entries

    def search(self, vm: Optional[VirtualMachine] = None, filter_value: Optional[str] = None,
               treebase: Optional[str] = None, filter_attribute: Optional[str] = None,
               scope: Any = None, require: bool = True) -> List[DirectoryEntry]:
        """Bind, search and release the connection. See find() for arguments."""
        with self.connection_factory(self.config) as directory:
            return self.find(directory, vm=vm, filter_value=filter_value, treebase=treebase,
                             filter_attribute=filter_attribute, scope=scope, require=require)
