"""
Validate identifiers, typically email addresses, against the directory.

An identifier is valid when a search for it returns at least one entry.
Valid results are cached forever under their normalized name; invalid
results are never cached, so a later search can still find them.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Set

from vm_ldap_sync.errors import MissingParameter
from vm_ldap_sync.locator import EntryLocator
from vm_ldap_sync.platform import TaggingService
from vm_ldap_sync.tags import TagCatalog, to_tag_name

logger = logging.getLogger(__name__)

VALID_EMAIL_CATEGORY = 'valid_emails'


class ValidationCache(ABC):
    """Positive-only cache of validated identifiers."""

    @abstractmethod
    def contains(self, namespace: str, key: str) -> bool:
        pass

    @abstractmethod
    def add(self, namespace: str, key: str, identifier: str) -> None:
        pass


class MemoryValidationCache(ValidationCache):
    """In-process cache. Unbounded and never expires."""

    def __init__(self):
        self._entries: Set[tuple] = set()

    def contains(self, namespace: str, key: str) -> bool:
        return (namespace, key) in self._entries

    def add(self, namespace: str, key: str, identifier: str) -> None:
        self._entries.add((namespace, key))


class TagValidationCache(ValidationCache):
    """Persists valid identifiers as tags in a category named after the namespace."""

    def __init__(self, tagging: TaggingService):
        self.tagging = tagging
        self.catalog = TagCatalog(tagging)

    def contains(self, namespace: str, key: str) -> bool:
        return self.tagging.tag_exists(to_tag_name(namespace), key)

    def add(self, namespace: str, key: str, identifier: str) -> None:
        self.catalog.ensure_tag(namespace, identifier)


@dataclass
class ValidationResult:
    valid: List[str] = field(default_factory=list)
    invalid: List[str] = field(default_factory=list)


class EmailValidator:
    """
    Partitions identifiers into those present in the directory and the rest.

    Duplicate inputs are passed through: every occurrence appears once in the
    output, in input order.
    """

    def __init__(self, locator: EntryLocator, cache: Optional[ValidationCache] = None,
                 namespace: str = VALID_EMAIL_CATEGORY):
        self.locator = locator
        self.cache = cache or MemoryValidationCache()
        self.namespace = namespace

    def is_valid(self, identifier: str, treebase: str, filter_attribute: str) -> bool:
        key = to_tag_name(identifier)
        if self.cache.contains(self.namespace, key):
            logger.debug(f"{identifier} previously validated")
            return True

        entries = self.locator.search(filter_value=identifier, treebase=treebase,
                                      filter_attribute=filter_attribute, require=False)
        valid = bool(entries)
        if valid:
            self.cache.add(self.namespace, key, identifier)
        return valid

    def validate(self, identifiers: Iterable[str], treebase: str, filter_attribute: str) -> ValidationResult:
        """
        Validate every identifier.

        Raises:
            MissingParameter: If identifiers, treebase or filter attribute is blank
            BindError: If the directory cannot be bound
        """
        identifiers = list(identifiers or [])
        if not identifiers:
            raise MissingParameter('email_addresses')
        if not treebase:
            raise MissingParameter('ldap_treebase')
        if not filter_attribute:
            raise MissingParameter('ldap_filter_attribute')

        result = ValidationResult()
        for identifier in identifiers:
            if self.is_valid(identifier, treebase, filter_attribute):
                result.valid.append(identifier)
            else:
                result.invalid.append(identifier)

        logger.info(f"Validated {len(identifiers)} identifiers: "
                    f"{len(result.valid)} valid, {len(result.invalid)} invalid")
        return result
