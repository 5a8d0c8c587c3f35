"""
Logging setup and configuration for VM LDAP Sync.

This module provides centralized logging configuration including file rotation,
retention policies, console output, scrubbing of credentials from messages and
an audit trail of every write made to the directory.
"""

import os
import re
import glob
import logging
import logging.handlers
from typing import Dict, Any
from datetime import datetime, timedelta

LOG_FILE_NAME = 'vm_ldap_sync.log'


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub sensitive data from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'ldap_password', 'bind_password', 'secret', 'secret_key',
        'key_file', 'credential', 'pwd', 'userPassword', 'krbPrincipalKey'
    ]

    def filter(self, record):
        """Filter out sensitive data from log records."""
        if hasattr(record, 'msg'):
            msg = str(record.msg)

            for keyword in self.SENSITIVE_KEYWORDS:
                # key=value and key: value
                msg = re.sub(rf'(\b{keyword}\s*[=:]\s*)(?!\s*[\'"])[^\s,}}\]]+',
                             r'\1****', msg, flags=re.IGNORECASE)
                # 'key': 'value' in dict reprs, "key": "value" in JSON
                msg = re.sub(rf'([\'"]{keyword}[\'"]\s*:\s*)([\'"])[^\'"]*([\'"])',
                             r'\1\2****\3', msg, flags=re.IGNORECASE)

            record.msg = msg

        return True


class LoggingManager:
    """
    Manages logging configuration for the VM LDAP Sync application.

    Provides file-based logging with rotation, retention policies, and
    console output.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Dict[str, Any]) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: Logging configuration dictionary
        """
        if self.configured:
            return

        logging_config = config if config else {}

        log_level = logging_config.get('level', 'INFO').upper()
        self.log_dir = logging_config.get('log_dir', 'logs')
        rotation = logging_config.get('rotation', 'daily')
        self.retention_days = logging_config.get('retention_days', 7)
        console_enabled = logging_config.get('console_output', True)
        console_level = logging_config.get('console_level', 'WARNING').upper()

        self._ensure_log_directory()

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level, logging.INFO))
        root_logger.handlers.clear()

        detailed_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        console_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%H:%M:%S'
        )

        sensitive_filter = SensitiveDataFilter()

        file_handler = self._create_file_handler(rotation)
        file_handler.setLevel(getattr(logging, log_level, logging.INFO))
        file_handler.setFormatter(detailed_formatter)
        file_handler.addFilter(sensitive_filter)
        root_logger.addHandler(file_handler)

        if console_enabled:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(getattr(logging, console_level, logging.WARNING))
            console_handler.setFormatter(console_formatter)
            console_handler.addFilter(sensitive_filter)
            root_logger.addHandler(console_handler)

        self._cleanup_old_logs()

        self.configured = True

        logger = logging.getLogger(__name__)
        logger.info(f"Logging configured: level={log_level}, dir={self.log_dir}, "
                    f"retention={self.retention_days} days, console={console_enabled}")

    def _ensure_log_directory(self) -> None:
        """Ensure the log directory exists."""
        if self.log_dir and not os.path.exists(self.log_dir):
            try:
                os.makedirs(self.log_dir, exist_ok=True)
            except OSError as e:
                print(f"Warning: Could not create log directory {self.log_dir}: {e}")
                print("Falling back to current directory for logs")
                self.log_dir = '.'

    def _create_file_handler(self, rotation: str) -> logging.Handler:
        """
        Create appropriate file handler based on rotation setting.

        Args:
            rotation: Rotation setting ('daily', 'midnight', or 'none')

        Returns:
            Configured logging handler
        """
        log_file = os.path.join(self.log_dir, LOG_FILE_NAME)

        if rotation.lower() in ['daily', 'midnight']:
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file,
                when='midnight',
                interval=1,
                backupCount=self.retention_days,
                encoding='utf-8'
            )
            handler.suffix = '%Y-%m-%d'
        else:
            handler = logging.FileHandler(log_file, encoding='utf-8')

        return handler

    def _cleanup_old_logs(self) -> None:
        """Clean up log files older than retention period."""
        if not self.log_dir or self.retention_days <= 0:
            return

        cutoff_date = datetime.now() - timedelta(days=self.retention_days)
        log_pattern = os.path.join(self.log_dir, f'{LOG_FILE_NAME}*')

        for log_file in glob.glob(log_pattern):
            if log_file.endswith(LOG_FILE_NAME):
                continue
            try:
                file_time = datetime.fromtimestamp(os.path.getmtime(log_file))
                if file_time < cutoff_date:
                    os.remove(log_file)
            except OSError as e:
                print(f"Warning: Could not remove old log file {log_file}: {e}")

    def get_log_files(self) -> list:
        """
        Get list of current log files.

        Returns:
            List of log file paths
        """
        if not self.log_dir:
            return []

        log_pattern = os.path.join(self.log_dir, f'{LOG_FILE_NAME}*')
        return sorted(glob.glob(log_pattern))


# Global logging manager instance
_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]) -> None:
    """
    Convenience function to set up logging.

    Args:
        config: Logging configuration dictionary
    """
    _logging_manager.setup_logging(config)


class DirectoryAuditLogger:
    """Audit trail for writes made to the directory."""

    def __init__(self):
        self.logger = logging.getLogger('vm_ldap_sync.audit')

    def log_bind(self, server: str, username: str, success: bool):
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"Bind {status}: server={server} user={username}")

    def log_write(self, operation: str, dn: str, success: bool, detail: str = ""):
        """Log an add, modify or delete against an entry."""
        status = "SUCCESS" if success else "FAILURE"
        message = f"Directory {operation} {status}: dn={dn}"
        if detail:
            message += f" - {detail}"
        if success:
            self.logger.info(message)
        else:
            self.logger.warning(message)


# Global audit logger instance
audit_logger = DirectoryAuditLogger()
