"""
Workflow engine request context and step results.

The workflow engine hands each step four parameter scopes. A parameter is
resolved by checking, in order, the current step, the current object, the
root request and the persisted cross-step state; the first non-empty value
wins. Steps report back through a StepResult rather than mutating the scopes.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from vm_ldap_sync.errors import MissingParameter

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    """Control-flow signals understood by the workflow engine."""
    OK = 'ok'
    CONTINUE = 'continue'
    RETRY = 'retry'
    SKIP = 'skip'
    ERROR = 'error'


def is_blank(value: Any) -> bool:
    """True for None, empty/whitespace strings and empty collections."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


@dataclass
class RequestContext:
    """Parameter scopes for one step invocation."""
    current: Dict[str, Any] = field(default_factory=dict)
    object: Dict[str, Any] = field(default_factory=dict)
    root: Dict[str, Any] = field(default_factory=dict)
    state: Dict[str, Any] = field(default_factory=dict)

    SCOPE_ORDER = ('current', 'object', 'root', 'state')

    def get_param(self, name: str, default: Any = None) -> Any:
        """
        Resolve a parameter across all scopes.

        Args:
            name: Parameter name
            default: Returned when no scope holds a non-empty value

        Returns:
            The first non-empty value in scope order, else ``default``
        """
        for scope_name in self.SCOPE_ORDER:
            value = getattr(self, scope_name).get(name)
            if not is_blank(value):
                logger.debug(f"Resolved parameter {name} from {scope_name} scope")
                return value
        return default

    def require_param(self, name: str) -> Any:
        """Resolve a parameter or raise MissingParameter."""
        value = self.get_param(name)
        if value is None:
            raise MissingParameter(name)
        return value


@dataclass
class StepResult:
    """
    Outcome of one workflow step.

    Attributes:
        outcome: Control-flow signal for the engine
        reason: Human readable reason, set for errors, retries and skips
        retry_interval: Seconds before the engine should re-invoke the step
        outputs: Values to write to the object-scoped output map
        state: Values the engine must persist for later steps or retries
        next_state: Optional name of the step to jump to
    """
    outcome: Outcome = Outcome.OK
    reason: Optional[str] = None
    retry_interval: Optional[int] = None
    outputs: Dict[str, Any] = field(default_factory=dict)
    state: Dict[str, Any] = field(default_factory=dict)
    next_state: Optional[str] = None

    @property
    def successful(self) -> bool:
        return self.outcome in (Outcome.OK, Outcome.CONTINUE, Outcome.SKIP)

    @classmethod
    def error(cls, reason: str) -> 'StepResult':
        return cls(outcome=Outcome.ERROR, reason=reason)

    @classmethod
    def retry(cls, seconds: int, reason: str, state: Optional[Dict[str, Any]] = None) -> 'StepResult':
        return cls(outcome=Outcome.RETRY, reason=reason, retry_interval=int(seconds),
                   state=dict(state or {}))
