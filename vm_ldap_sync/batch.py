"""
Fan large VM collections out into independently scheduled batches.

The platform limits how long one unit of work may run, so a sync across a
whole provider, cluster or host is split into fixed-size batches of VM ids,
each submitted as its own auto-approved unit of work. Submission is
fire-and-forget; each batch is then processed by a BatchRunner.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from vm_ldap_sync.config import DEFAULT_VMS_BATCH_SIZE
from vm_ldap_sync.errors import MissingParameter, SyncError, UnsupportedContainerType
from vm_ldap_sync.platform import Dispatcher, Inventory, VirtualMachine

logger = logging.getLogger(__name__)


class ContainerType(str, Enum):
    EXT_MANAGEMENT_SYSTEM = 'ext_management_system'
    EMS_CLUSTER = 'ems_cluster'
    HOST = 'host'


AUTOMATION_TASK = 'automation_task'


@dataclass(frozen=True)
class Batch:
    index: int
    vm_ids: Tuple[str, ...]

    @property
    def joined_ids(self) -> str:
        return ','.join(self.vm_ids)


def resolve_container(object_type: str, root: Mapping[str, Any]) -> Tuple[ContainerType, Any]:
    """
    Find the VM container a request was made against.

    Args:
        object_type: The request's object type
        root: Root request scope holding the container objects by type name

    Raises:
        UnsupportedContainerType: For any other object type
    """
    for container_type in ContainerType:
        if object_type == container_type.value:
            return container_type, root.get(container_type.value)
        if object_type == AUTOMATION_TASK and root.get(container_type.value) is not None:
            return container_type, root[container_type.value]

    expected = [t.value for t in ContainerType] + [AUTOMATION_TASK]
    raise UnsupportedContainerType(f"vmdb_object_type={object_type!r} is not one of expected {expected}.")


def partition(items: Sequence[Any], size: int = DEFAULT_VMS_BATCH_SIZE) -> List[List[Any]]:
    """Split into contiguous chunks of ``size``, the last one possibly shorter."""
    if size < 1:
        raise ValueError(f"Batch size must be positive, got {size}")
    items = list(items)
    return [items[i:i + size] for i in range(0, len(items), size)]


def parse_vm_ids(vm_ids: Union[str, Iterable[Any], None]) -> List[str]:
    """Accept the comma joined form used in dispatch payloads or any iterable."""
    if vm_ids is None:
        raise MissingParameter('vm_ids')
    if isinstance(vm_ids, str):
        return [vm_id.strip() for vm_id in vm_ids.split(',') if vm_id.strip()]
    return [str(vm_id) for vm_id in vm_ids]


class BatchScheduler:
    """Partitions a VM collection and dispatches one unit of work per batch."""

    def __init__(self, dispatcher: Dispatcher, batch_size: int = DEFAULT_VMS_BATCH_SIZE):
        self.dispatcher = dispatcher
        self.batch_size = batch_size

    def batches(self, vms: Sequence[VirtualMachine], batch_size: Optional[int] = None) -> List[Batch]:
        size = batch_size or self.batch_size
        return [
            Batch(index=index, vm_ids=tuple(str(vm.id) for vm in chunk))
            for index, chunk in enumerate(partition(vms, size))
        ]

    def dispatch(self, vms: Sequence[VirtualMachine], unit_of_work: str,
                 additional_attributes: Optional[Mapping[str, Any]] = None,
                 batch_size: Optional[int] = None) -> List[Batch]:
        """
        Submit one unit of work per batch without waiting for any of them.

        Args:
            vms: VMs in the order they should be processed
            unit_of_work: Name of the unit of work each batch runs
            additional_attributes: Extra attributes for every batch payload
            batch_size: Overrides the scheduler's batch size

        Returns:
            The dispatched batches
        """
        if not unit_of_work:
            raise MissingParameter('automation_request_instance_name')

        batches = self.batches(vms, batch_size)
        logger.info(f"Dispatching {len(vms)} VMs in {len(batches)} batches of up to "
                    f"{batch_size or self.batch_size} to {unit_of_work}")
        for batch in batches:
            attributes = dict(additional_attributes or {})
            attributes['vm_ids'] = batch.joined_ids
            self.dispatcher.submit(unit_of_work, attributes)
            logger.debug(f"Dispatched batch {batch.index}: vm_ids={batch.joined_ids}")
        return batches

    def dispatch_container(self, object_type: str, root: Mapping[str, Any], unit_of_work: str,
                           additional_attributes: Optional[Mapping[str, Any]] = None,
                           batch_size: Optional[int] = None) -> List[Batch]:
        """Resolve the request's container and dispatch all of its VMs."""
        container_type, container = resolve_container(object_type, root)
        vms = list(getattr(container, 'vms', None) or [])
        logger.info(f"Resolved {container_type.value} {getattr(container, 'name', '')} with {len(vms)} VMs")
        return self.dispatch(vms, unit_of_work, additional_attributes, batch_size)


class BatchRunner:
    """
    Runs a per-VM operation for every VM of one dispatched batch.

    Every VM is attempted; each result is True on success or the failure
    reason string.
    """

    def __init__(self, inventory: Inventory):
        self.inventory = inventory

    def run(self, vm_ids: Union[str, Iterable[Any]],
            operation: Callable[[VirtualMachine], Any]) -> Dict[str, Union[bool, str]]:
        ids = parse_vm_ids(vm_ids)
        logger.info(f"START: processing batch vm_ids={ids}")

        results: Dict[str, Union[bool, str]] = {}
        for vm_id in ids:
            vm = self.inventory.find_vm(vm_id)
            if vm is None:
                results[vm_id] = f"VM {vm_id} not found"
                logger.warning(f"VM {vm_id} not found in inventory")
                continue
            try:
                outcome = operation(vm)
            except SyncError as e:
                logger.error(f"Failed to process VM {vm.name}: {e}")
                results[vm.name] = str(e)
                continue
            results[vm.name] = _result_of(outcome)

        logger.info(f"END: processing batch vm_ids={ids}")
        logger.debug(f"Batch results: {results}")
        return results


def _result_of(outcome: Any) -> Union[bool, str]:
    """Interpret None, a bool or a StepResult-like outcome."""
    if outcome is None or outcome is True:
        return True
    if outcome is False:
        return "failed"
    if getattr(outcome, "successful", True):
        return True
    return getattr(outcome, "reason", None) or str(outcome)
