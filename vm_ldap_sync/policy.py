"""
Site policy hooks.

Sites decide what a new VM entry looks like, how dialog input maps onto entry
attributes and which tags an attribute value produces. Subclass
AttributePolicy, or pass any object with the same methods, to customize.
The defaults create FreeIPA-style host entries.
"""

import logging
import re
from typing import Any, Dict, Mapping, Optional, Tuple

from vm_ldap_sync.config import DirectoryConfig
from vm_ldap_sync.directory import DirectoryEntry
from vm_ldap_sync.platform import VirtualMachine

logger = logging.getLogger(__name__)

DIALOG_ATTRIBUTE_PREFIX = 'dialog_ldap_entry_attribute_'

HOST_OBJECT_CLASSES = [
    'ipaobject', 'ieee802device', 'nshost', 'ipaservice', 'pkiuser', 'ipahost',
    'krbprincipal', 'krbprincipalaux', 'ipasshhost', 'top', 'ipaSshGroupOfPubKeys',
]


class AttributePolicy:
    """Default policy; every method may be overridden."""

    def new_entry_attributes(self, hostname: str, vm: VirtualMachine,
                             dialog_attributes: Mapping[str, Any],
                             config: DirectoryConfig) -> Dict[str, Any]:
        domain = config.get('krb_principal_domain_name')
        return {
            'cn': hostname,
            'fqdn': hostname,
            'objectClass': list(HOST_OBJECT_CLASSES),
            'krbPrincipalName': f"host/{hostname}@{domain}",
            'ipaUniqueID': 'autogenerate',
        }

    def new_entry_dn(self, hostname: str, vm: VirtualMachine,
                     dialog_attributes: Mapping[str, Any], config: DirectoryConfig) -> str:
        return f"{config.hostname_filter}={hostname},{config.treebase}"

    def desired_attributes(self, entry: Optional[DirectoryEntry],
                           dialog_attributes: Mapping[str, Any],
                           retiring: bool = False) -> Dict[str, Any]:
        """
        Start from the entry's current attributes and overlay dialog input.

        Dialog fields named ``dialog_ldap_entry_attribute_<name>`` set
        attribute ``<name>``; multiple values are separated by newlines. A
        retiring VM gets no desired attributes.
        """
        if retiring:
            return {}

        desired: Dict[str, Any] = {}
        if entry is not None:
            for attribute, values in entry.items():
                desired[attribute] = list(values)

        for field_name, value in dialog_attributes.items():
            match = re.match(rf'{DIALOG_ATTRIBUTE_PREFIX}(.*)', str(field_name), re.IGNORECASE)
            if not match:
                continue
            attribute = match.group(1)
            desired[attribute] = [] if value is None else str(value).split('\n')
            logger.debug(f"Set LDAP entry attribute {attribute} from dialog: {desired[attribute]}")

        return desired

    def classify(self, vm: VirtualMachine, attribute: str, value: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """
        Map one attribute value to (tags, custom attributes).

        The default assigns nothing.
        """
        logger.debug(f"Default policy assigns no tags or custom attributes: "
                     f"vm={vm.name} attribute={attribute} value={value}")
        return {}, {}


class MappingPolicy(AttributePolicy):
    """
    Table driven classification.

    Args:
        tag_categories: attribute name -> tag category
        custom_attributes: attribute name -> custom attribute name
    """

    def __init__(self, tag_categories: Optional[Mapping[str, str]] = None,
                 custom_attributes: Optional[Mapping[str, str]] = None):
        self.tag_categories = {k.lower(): v for k, v in (tag_categories or {}).items()}
        self.custom_attributes = {k.lower(): v for k, v in (custom_attributes or {}).items()}

    def classify(self, vm: VirtualMachine, attribute: str, value: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        tags = {}
        custom_attributes = {}
        category = self.tag_categories.get(attribute.lower())
        if category:
            tags[category] = value
        name = self.custom_attributes.get(attribute.lower())
        if name:
            custom_attributes[name] = value
        return tags, custom_attributes

    @classmethod
    def from_config(cls, config: DirectoryConfig) -> 'MappingPolicy':
        mapping = config.get('tag_mapping') or {}
        return cls(mapping.get('tag_categories'), mapping.get('custom_attributes'))
