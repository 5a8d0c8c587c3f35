"""
LDAP transport for VM LDAP Sync.

This module wraps ldap3 behind the small set of operations the sync engine
needs: bind, search, add, modify and delete. A DirectoryConnection is used as
a context manager; the bind is acquired on entry and released on every exit
path. Write operations return booleans the way the transport does and keep the
server's diagnostic in ``last_error`` for the caller to report. A search that
the server answers with an error raises SearchError, so a failed search is
never mistaken for one that matched nothing.
"""

import logging
import ssl
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from ldap3 import (
    Server, Connection, Tls, ALL_ATTRIBUTES, BASE, LEVEL, SUBTREE,
    MODIFY_ADD, MODIFY_DELETE, MODIFY_REPLACE,
)
from ldap3.core.exceptions import LDAPException, LDAPSocketOpenError
from ldap3.utils.conv import escape_filter_chars

from vm_ldap_sync.config import DirectoryConfig
from vm_ldap_sync.diff import AttributeOperation, OperationKind
from vm_ldap_sync.errors import BindError, SearchError
from vm_ldap_sync.logging_setup import audit_logger
from vm_ldap_sync.retry import retry_call, MaxRetriesExceeded

logger = logging.getLogger(__name__)

SCOPES = {
    'base': BASE,
    'one': LEVEL,
    'subtree': SUBTREE,
    '0': BASE,
    '1': LEVEL,
    '2': SUBTREE,
}

_MODIFY_CODES = {
    OperationKind.ADD: MODIFY_ADD,
    OperationKind.REPLACE: MODIFY_REPLACE,
    OperationKind.DELETE: MODIFY_DELETE,
}


def resolve_scope(scope: Any) -> str:
    """Map a scope name or the numeric 0/1/2 form to an ldap3 scope, subtree by default."""
    if scope is None:
        return SUBTREE
    return SCOPES.get(str(scope).strip().lower(), SUBTREE)


@dataclass
class DirectoryEntry:
    """
    Snapshot of one directory entry.

    Attribute names keep the server's spelling but are looked up
    case-insensitively.
    """
    dn: str
    attributes: Dict[str, List[str]] = field(default_factory=dict)

    def __post_init__(self):
        self.attributes = {
            name: _as_value_list(values) for name, values in (self.attributes or {}).items()
        }

    def get(self, name: str, default: Optional[List[str]] = None) -> List[str]:
        lowered = name.lower()
        for attribute, values in self.attributes.items():
            if attribute.lower() == lowered:
                return values
        return [] if default is None else default

    def __getitem__(self, name: str) -> List[str]:
        return self.get(name)

    def __contains__(self, name: str) -> bool:
        return bool(self.get(name))

    def items(self) -> Iterator[Tuple[str, List[str]]]:
        return iter(self.attributes.items())

    def to_dict(self) -> Dict[str, Any]:
        return {'dn': self.dn, 'attributes': {name: list(values) for name, values in self.attributes.items()}}

    @classmethod
    def from_ldap3(cls, entry) -> 'DirectoryEntry':
        """Build from an ldap3 Entry returned by Connection.entries."""
        return cls(dn=str(entry.entry_dn), attributes=dict(entry.entry_attributes_as_dict))


def _as_value_list(values: Any) -> List[str]:
    if values is None:
        return []
    if isinstance(values, (list, tuple, set)):
        return [_as_text(value) for value in values]
    return [_as_text(values)]


def _as_text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode('utf-8', errors='replace')
    return str(value)


def to_ldap3_changes(operations: Sequence[AttributeOperation]) -> Dict[str, List[Tuple[str, List[str]]]]:
    """
    Convert operations to the ldap3 modify ``changes`` structure.

    Several operations on one attribute, such as one add per value, become
    several tuples in that attribute's change list, in order.
    """
    changes: Dict[str, List[Tuple[str, List[str]]]] = {}
    for operation in operations:
        changes.setdefault(operation.attribute, []).append(
            (_MODIFY_CODES[operation.kind], list(operation.values))
        )
    return changes


class DirectoryConnection:
    """
    One bound connection to the directory.

    Usage:
        with DirectoryConnection(config) as directory:
            directory.search(...)
    """

    def __init__(self, config: DirectoryConfig, connect_retries: int = 3, retry_wait: float = 5):
        self.config = config
        self.connect_retries = connect_retries
        self.retry_wait = retry_wait
        self.server = None
        self.connection = None
        self.last_error: Optional[str] = None

    def _create_tls_config(self) -> Optional[Tls]:
        if self.config.encryption == 'none':
            return None

        tls_config = {'validate': ssl.CERT_REQUIRED if self.config.verify_ssl else ssl.CERT_NONE}
        if not self.config.verify_ssl:
            logger.warning("SSL certificate verification disabled")
        if self.config.ca_cert_file:
            tls_config['ca_certs_file'] = self.config.ca_cert_file
        return Tls(**tls_config)

    def _open(self) -> Connection:
        connection = Connection(
            self.server,
            user=self.config.username,
            password=self.config.password,
            auto_bind=False,
            raise_exceptions=False,
        )
        connection.open()
        return connection

    def bind(self) -> bool:
        """
        Open the connection and bind with the configured credentials.

        Returns:
            True if bound, False with ``last_error`` set otherwise
        """
        self.last_error = None
        self.server = Server(
            self.config.server,
            port=self.config.port,
            use_ssl=self.config.encryption == 'simple_tls',
            tls=self._create_tls_config(),
            connect_timeout=self.config.connection_timeout,
        )

        try:
            self.connection = retry_call(
                self._open,
                max_attempts=self.connect_retries,
                delay=self.retry_wait,
                exceptions=(LDAPSocketOpenError,),
                operation_name=f"Open connection to {self.config.server}",
            )
            if self.config.encryption == 'start_tls' and not self.connection.start_tls():
                self.last_error = f"StartTLS failed: {self._describe_result()}"
                bound = False
            else:
                bound = self.connection.bind()
        except MaxRetriesExceeded as e:
            self.last_error = str(e)
            bound = False
        except LDAPException as e:
            self.last_error = str(e)
            bound = False

        if bound:
            logger.debug(f"LDAP bound to {self.config.server} as {self.config.username}")
        elif self.last_error is None:
            self.last_error = self._describe_result()
        audit_logger.log_bind(self.config.server, self.config.username, bound)
        return bound

    def unbind(self):
        """Close the connection. Never raises."""
        if self.connection is not None:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self.connection = None

    def __enter__(self) -> 'DirectoryConnection':
        if not self.bind():
            self.unbind()
            raise BindError(f"LDAP could not bind to {self.config.server} as {self.config.username}. "
                            f"LDAP Error = {self.last_error}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.unbind()

    def _describe_result(self) -> str:
        result = getattr(self.connection, 'result', None) or {}
        if isinstance(result, dict):
            description = result.get('description', 'unknown')
            message = result.get('message', '')
            return f"{description}: {message}" if message else str(description)
        return str(result)

    def search(self, base: str, filter_attribute: str, filter_value: str,
               scope: Any = None) -> List[DirectoryEntry]:
        """
        Search for entries whose ``filter_attribute`` equals ``filter_value``.

        Returns:
            Matching entries; empty when nothing matches

        Raises:
            SearchError: If the server answers with anything but success
        """
        self.last_error = None
        search_filter = f"({filter_attribute}={escape_filter_chars(str(filter_value))})"
        logger.debug(f"Searching with filter: {search_filter} in base: {base}")
        try:
            self.connection.search(
                search_base=base,
                search_filter=search_filter,
                search_scope=resolve_scope(scope),
                attributes=ALL_ATTRIBUTES,
            )
        except LDAPException as e:
            self.last_error = str(e)
            raise SearchError(f"LDAP search for {search_filter} under {base} failed. "
                              f"LDAP Error = {self.last_error}") from e

        result = getattr(self.connection, 'result', None) or {}
        if result.get('result') != 0:
            self.last_error = self._describe_result()
            raise SearchError(f"LDAP search for {search_filter} under {base} failed. "
                              f"LDAP Error = {self.last_error}")
        return [DirectoryEntry.from_ldap3(entry) for entry in self.connection.entries]

    def add(self, dn: str, attributes: Dict[str, Any]) -> bool:
        self.last_error = None
        values = {name: _as_value_list(value) for name, value in attributes.items()}
        object_class = values.pop('objectClass', None) or values.pop('objectclass', None)
        try:
            success = self.connection.add(dn, object_class=object_class, attributes=values)
        except LDAPException as e:
            self.last_error = str(e)
            success = False
        if not success and self.last_error is None:
            self.last_error = self._describe_result()
        audit_logger.log_write('add', dn, success, '' if success else self.last_error)
        return success

    def modify(self, dn: str, operations: Sequence[AttributeOperation]) -> bool:
        self.last_error = None
        changes = to_ldap3_changes(operations)
        try:
            success = self.connection.modify(dn, changes)
        except LDAPException as e:
            self.last_error = str(e)
            success = False
        if not success and self.last_error is None:
            self.last_error = self._describe_result()
        detail = f"{len(operations)} operations" if success else self.last_error
        audit_logger.log_write('modify', dn, success, detail)
        return success

    def delete(self, dn: str) -> bool:
        self.last_error = None
        try:
            success = self.connection.delete(dn)
        except LDAPException as e:
            self.last_error = str(e)
            success = False
        if not success and self.last_error is None:
            self.last_error = self._describe_result()
        audit_logger.log_write('delete', dn, success, '' if success else self.last_error)
        return success
