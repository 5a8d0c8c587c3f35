"""
Interfaces to the virtualization management platform.

The platform (VM inventory, tagging subsystem and asynchronous automation
requests) is an external collaborator. Integrations implement these abstract
classes; the sync engine only talks to the platform through them.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class VirtualMachine:
    """A VM as seen by the sync engine."""
    id: str
    name: str
    hostnames: List[str] = field(default_factory=list)

    @property
    def hostname(self) -> str:
        """First configured hostname, falling back to the VM name."""
        for hostname in self.hostnames:
            if hostname and hostname.strip():
                return hostname.strip()
        return self.name


class Inventory(ABC):
    """Read access to the platform's VM inventory."""

    @abstractmethod
    def find_vm(self, vm_id: str) -> Optional[VirtualMachine]:
        """Return the VM with the given id, or None if it does not exist."""


class TaggingService(ABC):
    """Tag category and tag primitives keyed by normalized names."""

    @abstractmethod
    def category_exists(self, category: str) -> bool:
        pass

    @abstractmethod
    def tag_exists(self, category: str, tag: str) -> bool:
        pass

    @abstractmethod
    def create_category(self, category: str, description: str, single_value: bool = False) -> None:
        pass

    @abstractmethod
    def create_tag(self, category: str, tag: str, description: str) -> None:
        pass


class Dispatcher(ABC):
    """Submits auto-approved units of work for out-of-band execution."""

    @abstractmethod
    def submit(self, unit_of_work: str, attributes: Dict[str, Any]) -> Any:
        """
        Queue a named unit of work.

        Args:
            unit_of_work: Name of the automation instance to run
            attributes: Attribute payload handed to the unit of work

        Returns:
            Platform specific request handle
        """
