#!/usr/bin/env python3
"""
Unit tests for batch partitioning, dispatch and batch processing.
"""

import os
import sys
import unittest
from types import SimpleNamespace
from unittest.mock import Mock

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from vm_ldap_sync.batch import (
    BatchRunner, BatchScheduler, ContainerType, parse_vm_ids, partition, resolve_container,
)
from vm_ldap_sync.context import StepResult
from vm_ldap_sync.errors import MissingParameter, NotFound, UnsupportedContainerType
from vm_ldap_sync.platform import VirtualMachine


def make_vms(count):
    return [VirtualMachine(id=str(i), name=f'vm{i}') for i in range(1, count + 1)]


class TestPartition(unittest.TestCase):

    def test_uneven_split(self):
        chunks = partition(list(range(25)), 10)

        self.assertEqual([len(chunk) for chunk in chunks], [10, 10, 5])
        self.assertEqual([item for chunk in chunks for item in chunk], list(range(25)))

    def test_empty(self):
        self.assertEqual(partition([], 10), [])

    def test_invalid_size(self):
        with self.assertRaises(ValueError):
            partition([1, 2], 0)

    def test_parse_vm_ids(self):
        self.assertEqual(parse_vm_ids('1, 2,3,'), ['1', '2', '3'])
        self.assertEqual(parse_vm_ids([4, 5]), ['4', '5'])
        with self.assertRaises(MissingParameter):
            parse_vm_ids(None)


class TestResolveContainer(unittest.TestCase):

    def setUp(self):
        self.cluster = SimpleNamespace(name='cluster1', vms=make_vms(3))
        self.host = SimpleNamespace(name='host1', vms=make_vms(2))

    def test_direct_object_type(self):
        container_type, container = resolve_container('host', {'host': self.host})

        self.assertEqual(container_type, ContainerType.HOST)
        self.assertIs(container, self.host)

    def test_automation_task_uses_first_present_container(self):
        container_type, container = resolve_container(
            'automation_task', {'ems_cluster': self.cluster, 'host': self.host}
        )

        self.assertEqual(container_type, ContainerType.EMS_CLUSTER)
        self.assertIs(container, self.cluster)

    def test_unsupported(self):
        with self.assertRaises(UnsupportedContainerType) as cm:
            resolve_container('service', {})
        self.assertIn("'service'", str(cm.exception))

    def test_automation_task_without_container(self):
        with self.assertRaises(UnsupportedContainerType):
            resolve_container('automation_task', {})


class TestBatchScheduler(unittest.TestCase):
    """Test cases for BatchScheduler."""

    def setUp(self):
        self.dispatcher = Mock()
        self.scheduler = BatchScheduler(self.dispatcher, batch_size=10)

    def test_dispatch_one_unit_per_batch(self):
        batches = self.scheduler.dispatch(make_vms(25), 'UpdateLDAPEntryAttributesForBatchOfVMs',
                                          additional_attributes={'options': '{}'})

        self.assertEqual(len(batches), 3)
        self.assertEqual(self.dispatcher.submit.call_count, 3)

        first_call = self.dispatcher.submit.call_args_list[0]
        self.assertEqual(first_call.args[0], 'UpdateLDAPEntryAttributesForBatchOfVMs')
        self.assertEqual(first_call.args[1], {'options': '{}', 'vm_ids': '1,2,3,4,5,6,7,8,9,10'})
        self.assertEqual(self.dispatcher.submit.call_args_list[2].args[1]['vm_ids'], '21,22,23,24,25')

    def test_dispatch_payloads_are_independent(self):
        extra = {'options': '{}'}
        self.scheduler.dispatch(make_vms(15), 'Unit', additional_attributes=extra)

        payloads = [c.args[1] for c in self.dispatcher.submit.call_args_list]
        self.assertIsNot(payloads[0], payloads[1])
        self.assertEqual(extra, {'options': '{}'})

    def test_batch_size_override(self):
        batches = self.scheduler.dispatch(make_vms(5), 'Unit', batch_size=2)
        self.assertEqual([len(batch.vm_ids) for batch in batches], [2, 2, 1])

    def test_unit_of_work_required(self):
        with self.assertRaises(MissingParameter):
            self.scheduler.dispatch(make_vms(1), '')
        self.dispatcher.submit.assert_not_called()

    def test_dispatch_container(self):
        root = {'ext_management_system': SimpleNamespace(name='ems1', vms=make_vms(12))}

        batches = self.scheduler.dispatch_container('ext_management_system', root, 'Unit')

        self.assertEqual(len(batches), 2)

    def test_empty_container_dispatches_nothing(self):
        root = {'host': SimpleNamespace(name='host1', vms=[])}

        self.assertEqual(self.scheduler.dispatch_container('host', root, 'Unit'), [])
        self.dispatcher.submit.assert_not_called()


class TestBatchRunner(unittest.TestCase):
    """Test cases for BatchRunner."""

    def setUp(self):
        self.vms = {vm.id: vm for vm in make_vms(4)}
        self.inventory = Mock()
        self.inventory.find_vm.side_effect = self.vms.get
        self.runner = BatchRunner(self.inventory)

    def test_every_vm_attempted(self):
        def operation(vm):
            if vm.name == 'vm2':
                raise NotFound('LDAP could not find any entries for fqdn=vm2')
            if vm.name == 'vm3':
                return StepResult.error('bind failed')
            return StepResult()

        results = self.runner.run('1,2,3,4', operation)

        self.assertEqual(results, {
            'vm1': True,
            'vm2': 'LDAP could not find any entries for fqdn=vm2',
            'vm3': 'bind failed',
            'vm4': True,
        })

    def test_missing_vm_recorded(self):
        results = self.runner.run(['1', '99'], lambda vm: None)
        self.assertEqual(results, {'vm1': True, '99': 'VM 99 not found'})

    def test_false_outcome(self):
        self.assertEqual(self.runner.run('1', lambda vm: False), {'vm1': 'failed'})

    def test_vm_ids_required(self):
        with self.assertRaises(MissingParameter):
            self.runner.run(None, lambda vm: None)


if __name__ == '__main__':
    unittest.main()
