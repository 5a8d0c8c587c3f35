#!/usr/bin/env python3
"""
Tests for logging setup, secret scrubbing and the directory audit trail.
"""

import os
import sys
import shutil
import logging
import tempfile
import unittest

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from vm_ldap_sync.logging_setup import (
    LOG_FILE_NAME, DirectoryAuditLogger, LoggingManager, SensitiveDataFilter,
)


def scrub(message):
    record = logging.LogRecord('test', logging.INFO, __file__, 1, message, None, None)
    SensitiveDataFilter().filter(record)
    return record.msg


class TestSensitiveDataFilter(unittest.TestCase):
    """Test cases for SensitiveDataFilter."""

    def test_key_value(self):
        self.assertEqual(scrub('bind with password=secret123 now'), 'bind with password=**** now')

    def test_colon_form(self):
        self.assertEqual(scrub('secret_key: abc123'), 'secret_key: ****')

    def test_dict_repr(self):
        self.assertEqual(scrub("settings={'password': 'topsecret', 'server': 'ldap'}"),
                         "settings={'password': '****', 'server': 'ldap'}")

    def test_json(self):
        self.assertEqual(scrub('{"userPassword": "hunter2"}'), '{"userPassword": "****"}')

    def test_plain_message_untouched(self):
        self.assertEqual(scrub('Found 2 LDAP entries for fqdn=vm1'), 'Found 2 LDAP entries for fqdn=vm1')

    def test_always_passes_record(self):
        record = logging.LogRecord('test', logging.INFO, __file__, 1, 'x', None, None)
        self.assertTrue(SensitiveDataFilter().filter(record))


class TestDirectoryAuditLogger(unittest.TestCase):

    def test_successful_write_logged_at_info(self):
        with self.assertLogs('vm_ldap_sync.audit', level='INFO') as cm:
            DirectoryAuditLogger().log_write('add', 'fqdn=vm1,dc=x', True)

        self.assertEqual(cm.records[0].levelno, logging.INFO)
        self.assertIn('Directory add SUCCESS: dn=fqdn=vm1,dc=x', cm.output[0])

    def test_failed_write_logged_at_warning(self):
        with self.assertLogs('vm_ldap_sync.audit', level='INFO') as cm:
            DirectoryAuditLogger().log_write('delete', 'fqdn=vm1,dc=x', False, 'noSuchObject')

        self.assertEqual(cm.records[0].levelno, logging.WARNING)
        self.assertIn('FAILURE', cm.output[0])
        self.assertIn('noSuchObject', cm.output[0])

    def test_bind(self):
        with self.assertLogs('vm_ldap_sync.audit', level='INFO') as cm:
            DirectoryAuditLogger().log_bind('ldap.example.com', 'admin', False)

        self.assertIn('Bind FAILURE: server=ldap.example.com user=admin', cm.output[0])


class TestLoggingManager(unittest.TestCase):
    """Test cases for LoggingManager."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp(prefix='vm_ldap_sync_logs_')
        self.root_logger = logging.getLogger()
        self.saved_handlers = list(self.root_logger.handlers)
        self.saved_level = self.root_logger.level

    def tearDown(self):
        for handler in list(self.root_logger.handlers):
            handler.close()
        self.root_logger.handlers = self.saved_handlers
        self.root_logger.setLevel(self.saved_level)
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_setup_writes_scrubbed_log_file(self):
        log_dir = os.path.join(self.temp_dir, 'logs')
        manager = LoggingManager()
        manager.setup_logging({'level': 'DEBUG', 'log_dir': log_dir, 'console_output': False})

        logging.getLogger('vm_ldap_sync.test').info('bind password=hunter2')
        for handler in self.root_logger.handlers:
            handler.flush()

        self.assertEqual(manager.get_log_files(), [os.path.join(log_dir, LOG_FILE_NAME)])
        with open(os.path.join(log_dir, LOG_FILE_NAME), encoding='utf-8') as f:
            content = f.read()
        self.assertIn('password=****', content)
        self.assertNotIn('hunter2', content)

    def test_setup_only_once(self):
        manager = LoggingManager()
        manager.setup_logging({'log_dir': self.temp_dir, 'console_output': False})
        handlers = list(self.root_logger.handlers)

        manager.setup_logging({'log_dir': self.temp_dir, 'console_output': True})

        self.assertEqual(self.root_logger.handlers, handlers)

    def test_old_rotated_logs_removed(self):
        old_log = os.path.join(self.temp_dir, f'{LOG_FILE_NAME}.2000-01-01')
        with open(old_log, 'w') as f:
            f.write('old')
        os.utime(old_log, (0, 0))

        LoggingManager().setup_logging({'log_dir': self.temp_dir, 'retention_days': 7, 'console_output': False})

        self.assertFalse(os.path.exists(old_log))


if __name__ == '__main__':
    unittest.main()
