#!/usr/bin/env python3
"""
Unit tests for the attribute diff engine.
"""

import os
import sys
import unittest

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from vm_ldap_sync.diff import AttributeOperation, OperationKind, compute_operations, normalize_values
from vm_ldap_sync.errors import DiffComputationError


def apply_operations(existing, operations):
    """Apply operations to a copy of existing the way the directory would."""
    result = {name: normalize_values(name, values) for name, values in existing.items()}

    for operation in operations:
        name = next((key for key in result if key.lower() == operation.attribute.lower()), operation.attribute)
        if operation.kind == OperationKind.DELETE:
            result.pop(name, None)
        elif operation.kind == OperationKind.REPLACE:
            result[name] = list(operation.values)
        else:
            result.setdefault(name, []).extend(operation.values)

    return result


class TestNormalizeValues(unittest.TestCase):
    """Test cases for value normalization."""

    def test_scalar_becomes_list(self):
        self.assertEqual(normalize_values('cn', 'host1'), ['host1'])

    def test_values_are_trimmed_and_blanks_dropped(self):
        self.assertEqual(normalize_values('mail', ['  a@x.com ', '', '   ', 'b@x.com']), ['a@x.com', 'b@x.com'])

    def test_none_is_empty(self):
        self.assertEqual(normalize_values('mail', None), [])

    def test_numbers_and_bytes(self):
        self.assertEqual(normalize_values('uidNumber', 1001), ['1001'])
        self.assertEqual(normalize_values('cn', [b'host1']), ['host1'])

    def test_unsupported_types_rejected(self):
        with self.assertRaises(DiffComputationError):
            normalize_values('flag', True)
        with self.assertRaises(DiffComputationError):
            normalize_values('nested', [{'a': 1}])


class TestAttributeOperation(unittest.TestCase):
    """Test cases for operation construction."""

    def test_delete_carries_no_values(self):
        operation = AttributeOperation.delete('title')
        self.assertEqual(operation.kind, OperationKind.DELETE)
        self.assertEqual(operation.values, ())

        with self.assertRaises(DiffComputationError):
            AttributeOperation(OperationKind.DELETE, 'title', ('x',))

    def test_add_and_replace_require_values(self):
        with self.assertRaises(DiffComputationError):
            AttributeOperation(OperationKind.ADD, 'mail')
        with self.assertRaises(DiffComputationError):
            AttributeOperation(OperationKind.REPLACE, 'mail')


class TestComputeOperations(unittest.TestCase):
    """Test cases for computing the minimal operation list."""

    def test_replace_changed_and_ignore_absent_empty(self):
        existing = {'mail': ['old@x.com']}
        desired = {'mail': ['new@x.com'], 'title': []}

        operations = compute_operations(existing, desired)

        self.assertEqual(operations, [AttributeOperation.replace('mail', 'new@x.com')])

    def test_delete_when_desired_empty(self):
        operations = compute_operations({'title': ['Engineer']}, {'title': []})
        self.assertEqual(operations, [AttributeOperation.delete('title')])

    def test_whitespace_only_desired_is_delete(self):
        operations = compute_operations({'title': ['Engineer']}, {'title': '   '})
        self.assertEqual(operations, [AttributeOperation.delete('title')])

    def test_one_add_per_value(self):
        operations = compute_operations({}, {'mail': ['a@x.com', 'b@x.com']})
        self.assertEqual(operations, [
            AttributeOperation.add('mail', 'a@x.com'),
            AttributeOperation.add('mail', 'b@x.com'),
        ])

    def test_equal_after_trim_is_noop(self):
        operations = compute_operations({'description': ['web server']}, {'description': '  web server  '})
        self.assertEqual(operations, [])

    def test_equal_ignores_order(self):
        operations = compute_operations({'mail': ['b@x.com', 'a@x.com']}, {'mail': ['a@x.com', 'b@x.com']})
        self.assertEqual(operations, [])

    def test_repeated_desired_value_is_noop(self):
        operations = compute_operations({'mail': ['a@x.com']}, {'mail': ['a@x.com', 'a@x.com']})
        self.assertEqual(operations, [])

    def test_repeated_values_added_once(self):
        operations = compute_operations({}, {'memberOf': ['web', 'web', ' db']})
        self.assertEqual(operations, [
            AttributeOperation.add('memberOf', 'web'),
            AttributeOperation.add('memberOf', 'db'),
        ])

    def test_repeated_values_replaced_once(self):
        operations = compute_operations({'mail': ['old@x.com']}, {'mail': ['a@x.com', 'a@x.com']})
        self.assertEqual(operations, [AttributeOperation.replace('mail', 'a@x.com')])

    def test_unmentioned_attributes_untouched(self):
        operations = compute_operations({'cn': ['host1'], 'mail': ['a@x.com']}, {'mail': ['a@x.com']})
        self.assertEqual(operations, [])

    def test_attribute_lookup_is_case_insensitive(self):
        operations = compute_operations({'Mail': ['a@x.com']}, {'mail': ['a@x.com']})
        self.assertEqual(operations, [])

    def test_operations_follow_desired_order(self):
        existing = {'a': ['1'], 'c': ['3']}
        desired = {'c': [], 'b': ['2'], 'a': ['9']}

        kinds = [(op.kind, op.attribute) for op in compute_operations(existing, desired)]

        self.assertEqual(kinds, [
            (OperationKind.DELETE, 'c'),
            (OperationKind.ADD, 'b'),
            (OperationKind.REPLACE, 'a'),
        ])

    def test_applying_operations_reaches_desired(self):
        existing = {'mail': ['old@x.com'], 'title': ['Engineer'], 'cn': ['host1']}
        desired = {'mail': ['new@x.com', 'other@x.com'], 'title': [], 'description': 'db'}

        result = apply_operations(existing, compute_operations(existing, desired))

        self.assertEqual(sorted(result['mail']), ['new@x.com', 'other@x.com'])
        self.assertNotIn('title', result)
        self.assertEqual(result['description'], ['db'])
        self.assertEqual(result['cn'], ['host1'])

    def test_diff_of_desired_against_itself_is_empty(self):
        desired = {'cn': 'host1', 'mail': ['a@x.com', 'b@x.com'], 'uidNumber': 1001}
        self.assertEqual(compute_operations(desired, desired), [])

    def test_rerunning_after_apply_is_empty(self):
        cases = [
            ({}, {'mail': ['a@x.com', 'a@x.com'], 'cn': 'host1'}),
            ({'mail': ['old@x.com'], 'title': ['Engineer']}, {'mail': ['new@x.com'], 'title': []}),
            ({'Description': ['a', 'b']}, {'description': [' b ', 'c'], 'owner': None}),
        ]
        for existing, desired in cases:
            with self.subTest(existing=existing, desired=desired):
                updated = apply_operations(existing, compute_operations(existing, desired))
                self.assertEqual(compute_operations(updated, desired), [])

    def test_unsupported_desired_value_raises(self):
        with self.assertRaises(DiffComputationError):
            compute_operations({}, {'enabled': False})


if __name__ == '__main__':
    unittest.main()
