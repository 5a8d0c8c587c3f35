"""
Retry utilities for VM LDAP Sync.

Two kinds of retry live here. Replication lag after an entry is created is
handled cooperatively: the step exits with a retry signal and a RetryState
that the workflow engine persists and hands back on the next invocation.
Transient socket failures while opening a directory connection are retried
in-process a bounded number of times with retry_call.
"""

import time
import logging
from dataclasses import dataclass, field
from typing import Callable, Any, Dict, Tuple, Type, Optional

logger = logging.getLogger(__name__)

# Keys under which RetryState is persisted in the workflow engine's state scope
STATE_RETRYING = 'retry_add_ldap'
STATE_ATTRIBUTES = 'ldap_new_entry_attributes'
STATE_DN = 'ldap_new_entry_dn'


@dataclass
class RetryState:
    """
    Saved context for resuming an entry creation that is waiting on replication.

    Attributes:
        retrying: True once the add has succeeded and only the search remains
        attributes: Attributes the entry was created with
        dn: DN the entry was created with
    """
    retrying: bool = False
    attributes: Dict[str, Any] = field(default_factory=dict)
    dn: Optional[str] = None

    @classmethod
    def from_state(cls, state: Dict[str, Any]) -> 'RetryState':
        """Rebuild from the workflow engine's persisted state scope."""
        return cls(
            retrying=bool(state.get(STATE_RETRYING)),
            attributes=dict(state.get(STATE_ATTRIBUTES) or {}),
            dn=state.get(STATE_DN),
        )

    def to_state(self) -> Dict[str, Any]:
        """Serialize for persistence. A cleared state resets the retry flag."""
        if not self.retrying:
            return {STATE_RETRYING: None}
        return {
            STATE_RETRYING: True,
            STATE_ATTRIBUTES: self.attributes,
            STATE_DN: self.dn,
        }

    @classmethod
    def cleared(cls) -> 'RetryState':
        return cls()


class MaxRetriesExceeded(Exception):
    """Raised when maximum retry attempts are exceeded."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts: {last_exception}")


def retry_call(
    func: Callable,
    max_attempts: int = 3,
    delay: float = 1.0,
    exceptions: Tuple[Type[Exception], ...] = (ConnectionError, TimeoutError),
    operation_name: str = 'Operation',
    sleep: Callable[[float], None] = time.sleep
) -> Any:
    """
    Call a function, retrying on the given exceptions.

    Args:
        func: Zero-argument callable
        max_attempts: Maximum number of attempts, including the first
        delay: Seconds to wait between attempts
        exceptions: Exception types that trigger another attempt
        operation_name: Used in log messages
        sleep: Sleep function, replaceable in tests

    Returns:
        Function result

    Raises:
        MaxRetriesExceeded: If all attempts fail
    """
    max_attempts = max(1, int(max_attempts))
    last_exception = None

    for attempt in range(max_attempts):
        try:
            result = func()
            if attempt > 0:
                logger.info(f"{operation_name} succeeded on attempt {attempt + 1}")
            return result
        except exceptions as e:
            last_exception = e
            if attempt == max_attempts - 1:
                break
            logger.warning(f"{operation_name} failed on attempt {attempt + 1}/{max_attempts}, "
                           f"retrying in {delay:.1f} seconds due to {type(e).__name__}: {e}")
            sleep(delay)

    raise MaxRetriesExceeded(max_attempts, last_exception)
