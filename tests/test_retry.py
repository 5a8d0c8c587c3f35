#!/usr/bin/env python3
"""
Unit tests for retry state persistence and the bounded retry helper.
"""

import os
import sys
import unittest
from unittest.mock import Mock

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from vm_ldap_sync.retry import (
    MaxRetriesExceeded, RetryState, STATE_ATTRIBUTES, STATE_DN, STATE_RETRYING, retry_call,
)


class TestRetryState(unittest.TestCase):
    """Test cases for RetryState."""

    def test_round_trip_through_state_scope(self):
        state = RetryState(retrying=True, attributes={'cn': 'host1'}, dn='fqdn=host1,dc=x').to_state()

        self.assertEqual(state, {
            STATE_RETRYING: True,
            STATE_ATTRIBUTES: {'cn': 'host1'},
            STATE_DN: 'fqdn=host1,dc=x',
        })

        restored = RetryState.from_state(state)
        self.assertTrue(restored.retrying)
        self.assertEqual(restored.attributes, {'cn': 'host1'})
        self.assertEqual(restored.dn, 'fqdn=host1,dc=x')

    def test_cleared_resets_flag(self):
        self.assertEqual(RetryState.cleared().to_state(), {STATE_RETRYING: None})

    def test_from_empty_state(self):
        restored = RetryState.from_state({})
        self.assertFalse(restored.retrying)
        self.assertEqual(restored.attributes, {})
        self.assertIsNone(restored.dn)


class TestRetryCall(unittest.TestCase):
    """Test cases for retry_call."""

    def test_success_first_attempt(self):
        func = Mock(return_value='ok')
        sleep = Mock()

        self.assertEqual(retry_call(func, sleep=sleep), 'ok')
        func.assert_called_once()
        sleep.assert_not_called()

    def test_retries_then_succeeds(self):
        func = Mock(side_effect=[ConnectionError('down'), 'ok'])
        sleep = Mock()

        self.assertEqual(retry_call(func, max_attempts=3, delay=2, sleep=sleep), 'ok')
        self.assertEqual(func.call_count, 2)
        sleep.assert_called_once_with(2)

    def test_gives_up(self):
        func = Mock(side_effect=ConnectionError('down'))
        sleep = Mock()

        with self.assertRaises(MaxRetriesExceeded) as cm:
            retry_call(func, max_attempts=3, delay=0, sleep=sleep)

        self.assertEqual(cm.exception.attempts, 3)
        self.assertIsInstance(cm.exception.last_exception, ConnectionError)
        self.assertEqual(func.call_count, 3)
        self.assertEqual(sleep.call_count, 2)

    def test_other_exceptions_propagate(self):
        func = Mock(side_effect=ValueError('bad'))

        with self.assertRaises(ValueError):
            retry_call(func, sleep=Mock())
        func.assert_called_once()


if __name__ == '__main__':
    unittest.main()
