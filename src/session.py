"""Provisioning session state.

Tracks the lifecycle state of the single live session in this process and
persists a summary to <workspace>/session.json, so a later undeploy can
report what it is tearing down.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from errors import InvalidTransition
from variables import RunConfiguration, VariableSet
from workspace import Workspace

logger = logging.getLogger(__name__)

SESSION_FILE = 'session.json'


class LifecycleState(str, Enum):
    IDLE = 'idle'
    INITIALIZING = 'initializing'
    APPLYING = 'applying'
    RUNNING = 'running'
    DESTROYING = 'destroying'
    TERMINATED = 'terminated'
    FAILED = 'failed'


# idle -> destroying is the undeploy path (no prior apply in this process)
TRANSITIONS: dict[LifecycleState, frozenset] = {
    LifecycleState.IDLE: frozenset({
        LifecycleState.INITIALIZING, LifecycleState.DESTROYING, LifecycleState.FAILED,
    }),
    LifecycleState.INITIALIZING: frozenset({LifecycleState.APPLYING, LifecycleState.FAILED}),
    LifecycleState.APPLYING: frozenset({LifecycleState.RUNNING, LifecycleState.FAILED}),
    LifecycleState.RUNNING: frozenset({LifecycleState.DESTROYING, LifecycleState.FAILED}),
    LifecycleState.FAILED: frozenset({LifecycleState.DESTROYING, LifecycleState.TERMINATED}),
    LifecycleState.DESTROYING: frozenset({LifecycleState.TERMINATED}),
    LifecycleState.TERMINATED: frozenset(),
}


@dataclass
class ProvisioningSession:
    """Runtime record of one deploy-to-destroy run.

    Mutated only by the lifecycle controller.

    Attributes:
        config: Run configuration
        variables: Resolved template variables
        workspace: Workspace once prepared
        state: Current lifecycle state
        outputs: Outputs parsed from a successful apply
        apply_started: True once the apply subprocess was launched
        process: In-flight subprocess handle (None between phases)
        error: Message of the error that failed the session
        destroy_succeeded: Result of the destroy phase, None if never run
        history: (state, timestamp) pairs in transition order
    """
    config: RunConfiguration
    variables: VariableSet
    workspace: Optional[Workspace] = None
    state: LifecycleState = LifecycleState.IDLE
    outputs: dict = field(default_factory=dict)
    apply_started: bool = False
    process: Any = field(default=None, repr=False)
    error: Optional[str] = None
    destroy_succeeded: Optional[bool] = None
    history: list = field(default_factory=list)
    started_at: float = field(default_factory=time.time)

    def transition(self, target: LifecycleState) -> None:
        """Move to target state.

        Raises:
            InvalidTransition: If the move is not allowed from the current state
        """
        if target not in TRANSITIONS[self.state]:
            raise InvalidTransition(self.state.value, target.value)
        logger.debug(f"Session state: {self.state.value} -> {target.value}")
        self.state = target
        self.history.append((target.value, time.time()))
        self.save()

    def fail(self, error: str) -> None:
        """Record an error and move to failed (if not already terminal-bound)."""
        if self.error is None:
            self.error = error
        if LifecycleState.FAILED in TRANSITIONS[self.state]:
            self.transition(LifecycleState.FAILED)

    @property
    def is_terminal(self) -> bool:
        return self.state is LifecycleState.TERMINATED

    @property
    def needs_destroy(self) -> bool:
        """True if cloud resources may exist (apply was launched)."""
        return self.apply_started

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'provider': self.config.provider.value,
            'region': self.variables.get('region'),
            'instance_type': self.variables.get('instance_type'),
            'state': self.state.value,
            'started_at': self.started_at,
            'apply_started': self.apply_started,
        }
        if self.outputs:
            d['outputs'] = dict(self.outputs)
        if self.error is not None:
            d['error'] = self.error
        if self.destroy_succeeded is not None:
            d['destroy_succeeded'] = self.destroy_succeeded
        return d

    def save(self) -> Optional[Path]:
        """Persist the summary into the workspace (skipped before it exists)."""
        if self.workspace is None or not self.workspace.path.is_dir():
            return None
        path = self.workspace.path / SESSION_FILE
        try:
            with open(path, 'w', encoding='utf-8') as f:
                json.dump(self.to_dict(), f, indent=2)
        except OSError as e:
            logger.warning(f"Could not save session state to {path}: {e}")
            return None
        return path


def load_session_summary(workspace: Workspace) -> Optional[dict]:
    """Read the summary persisted by an earlier process, if any."""
    path = workspace.path / SESSION_FILE
    try:
        with open(path, encoding='utf-8') as f:
            return json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Ignoring unreadable session file {path}: {e}")
        return None
