"""
Error taxonomy for VM LDAP Sync.

Every error raised by the reconciliation engine derives from SyncError so the
workflow steps can turn any of them into an ``error`` outcome with a readable
reason. Replication lag after an add is not an error and never appears here.
"""

from typing import List, Tuple


class SyncError(Exception):
    """Base exception for sync errors."""
    pass


class ConfigurationMissing(SyncError):
    """Raised when configuration is missing or fails validation."""
    pass


class MissingParameter(SyncError):
    """Raised when a required workflow parameter is not set in any scope."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"{name} parameter not found")


class DirectoryError(SyncError):
    """Base exception for directory operation failures."""
    pass


class BindError(DirectoryError):
    """Raised when binding to the directory server fails."""
    pass


class AddError(DirectoryError):
    """Raised when the directory rejects an add request."""
    pass


class ModifyError(DirectoryError):
    """Raised when the directory rejects a modify request."""
    pass


class DeletionError(DirectoryError):
    """
    Raised after a delete pass in which one or more entries failed.

    Attributes:
        failures: (dn, reason) for every entry that could not be deleted
    """

    def __init__(self, failures: List[Tuple[str, str]]):
        self.failures = list(failures)
        details = " ".join(
            f"Failed to delete LDAP entry {dn}: {reason}." for dn, reason in self.failures
        )
        super().__init__(details)

    @property
    def failed_dns(self) -> List[str]:
        return [dn for dn, _ in self.failures]


class SearchError(DirectoryError):
    """Raised when the directory answers a search with an error result."""
    pass


class NotFound(DirectoryError):
    """Raised when a search that requires results matches nothing."""
    pass


class AmbiguousEntry(SyncError):
    """Raised when more than one entry exists for a VM where one is expected."""
    pass


class DiffComputationError(SyncError):
    """Raised when an attribute diff hits a combination that should be impossible."""
    pass


class UnsupportedContainerType(SyncError):
    """Raised when a VM collection is requested from an unknown container type."""
    pass
