"""
Project directory attributes onto VM tags and custom attributes.

A classifier decides, for every (attribute, value) pair of a VM's entries,
which tag categories/tags and custom attributes that pair contributes. The
aggregator folds those contributions together:

    tags:               a second value for a category turns the scalar into a
                        list, further values are appended
    custom attributes:  values for the same name are joined with ", "

After folding, the sync status is written on top, replacing any earlier
status values.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from vm_ldap_sync.directory import DirectoryEntry
from vm_ldap_sync.platform import TaggingService, VirtualMachine

logger = logging.getLogger(__name__)

TAG_CATEGORY_LDAP_SYNC_SUCCESSFUL = 'LDAP Sync Successful'
ATTRIBUTE_LDAP_SYNC_STATUS = 'LDAP Sync Status'
ATTRIBUTE_LAST_LDAP_SYNC = 'Last LDAP Sync Attempt'
DEFAULT_LDAP_SYNC_STATUS = 'Unknown'
DEFAULT_LDAP_SYNC_SUCCESSFUL = False
LDAP_SYNC_SUCCESSFUL_STATUS = 'Successful'

TagValue = Union[str, List[str]]
TagAssignment = Dict[str, TagValue]
CustomAttributeAssignment = Dict[str, str]
Classifier = Callable[[VirtualMachine, str, str], Tuple[Dict[str, Any], Dict[str, Any]]]


def to_tag_name(value: str) -> str:
    """Lowercase and replace every run of characters outside [a-z0-9_] with '_'."""
    return re.sub(r'[^a-z0-9_]+', '_', str(value).lower())


def iter_attribute_pairs(entries: Sequence[DirectoryEntry]) -> Iterator[Tuple[str, str]]:
    """Flatten entries into pairs: entry order, then attribute order, then value order."""
    for entry in entries:
        for attribute, values in entry.items():
            for value in values:
                yield attribute, value


def merge_tags(tags: TagAssignment, new_tags: Dict[str, Any]) -> TagAssignment:
    """Merge in place, promoting a category to a list on its first collision."""
    for category, tag in new_tags.items():
        if category not in tags:
            tags[category] = list(tag) if isinstance(tag, (list, tuple)) else tag
            continue
        existing = tags[category]
        if not isinstance(existing, list):
            existing = [existing]
        existing.extend(tag if isinstance(tag, (list, tuple)) else [tag])
        tags[category] = existing
    return tags


def merge_custom_attributes(custom_attributes: CustomAttributeAssignment,
                            new_attributes: Dict[str, Any]) -> CustomAttributeAssignment:
    for name, value in new_attributes.items():
        if name in custom_attributes:
            custom_attributes[name] = f"{custom_attributes[name]}, {value}"
        else:
            custom_attributes[name] = str(value)
    return custom_attributes


@dataclass
class TagProjection:
    """Tags and custom attributes to set on one VM."""
    tags: TagAssignment = field(default_factory=dict)
    custom_attributes: CustomAttributeAssignment = field(default_factory=dict)


class TagAggregator:
    """Folds classifier output for every attribute value of a VM's entries."""

    def __init__(self, classifier: Classifier, clock: Callable[[], datetime] = datetime.now):
        self.classifier = classifier
        self.clock = clock

    def aggregate_pairs(self, vm: VirtualMachine, pairs: Iterable[Tuple[str, str]]) -> TagProjection:
        projection = TagProjection()
        for attribute, value in pairs:
            pair_tags, pair_custom_attributes = self.classifier(vm, attribute, value)
            merge_tags(projection.tags, pair_tags or {})
            merge_custom_attributes(projection.custom_attributes, pair_custom_attributes or {})
        logger.debug(f"Aggregated tags for {vm.name}: {projection.tags}")
        logger.debug(f"Aggregated custom attributes for {vm.name}: {projection.custom_attributes}")
        return projection

    def aggregate(self, vm: VirtualMachine, entries: Sequence[DirectoryEntry]) -> TagProjection:
        """Fold every attribute value of every entry, in entry order."""
        return self.aggregate_pairs(vm, iter_attribute_pairs(entries))

    def finalize(self, projection: Optional[TagProjection] = None,
                 successful: Optional[bool] = None, status: Optional[str] = None) -> TagProjection:
        """
        Record the sync outcome, overwriting any earlier status values.

        Args:
            projection: Folded tags and custom attributes, empty if None
            successful: Whether the sync succeeded, failure when unknown
            status: Status message, 'Unknown' when not given
        """
        projection = projection or TagProjection()
        if successful is None:
            successful = DEFAULT_LDAP_SYNC_SUCCESSFUL
        projection.tags[TAG_CATEGORY_LDAP_SYNC_SUCCESSFUL] = str(bool(successful)).lower()
        projection.custom_attributes[ATTRIBUTE_LDAP_SYNC_STATUS] = status or DEFAULT_LDAP_SYNC_STATUS
        projection.custom_attributes[ATTRIBUTE_LAST_LDAP_SYNC] = self.clock().isoformat(sep=' ', timespec='seconds')
        return projection


class TagCatalog:
    """Creates tag categories and tags on demand through the tagging service."""

    def __init__(self, tagging: TaggingService):
        self.tagging = tagging

    def ensure_category(self, category: str, description: Optional[str] = None,
                        single_value: bool = False) -> str:
        category_name = to_tag_name(category)
        if not self.tagging.category_exists(category_name):
            self.tagging.create_category(category_name, description or category, single_value)
            logger.info(f"Created tag category {category_name}")
        return category_name

    def ensure_tag(self, category: str, tag: str) -> str:
        category_name = self.ensure_category(category)
        tag_name = to_tag_name(tag)
        if not self.tagging.tag_exists(category_name, tag_name):
            self.tagging.create_tag(category_name, tag_name, tag)
            logger.info(f"Created tag {category_name}/{tag_name}")
        return tag_name

    def ensure_assignment(self, tags: TagAssignment) -> Dict[str, List[str]]:
        """
        Make sure every category and tag in an assignment exists.

        Returns:
            Normalized category name -> normalized tag names
        """
        ensured: Dict[str, List[str]] = {}
        for category, value in tags.items():
            values = value if isinstance(value, list) else [value]
            ensured[to_tag_name(category)] = [self.ensure_tag(category, tag) for tag in values]
        return ensured
