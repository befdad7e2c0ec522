"""Lifecycle controller for ephemeral deployments.

Sequences a run through the session state machine:

    idle -> initializing -> applying -> running -> destroying -> terminated
                 \\             \\           \\
                  +-------------+-----------+--> failed -> destroying | terminated

Signal handlers (SIGINT, SIGTERM) are installed before the workspace is
prepared and feed a single Interruption token. Teardown (destroy if apply was
launched, then workspace disposal) runs from a finally block and is claimed
through the token, so it happens exactly once no matter how many signals
arrive or which path (signal, error, unexpected exception) triggers it.
"""

import logging
import signal
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Optional

import catalog
from config import Settings
from driver import TerraformDriver
from errors import (
    FuocoError,
    InterruptedDuringApply,
    InvalidConfiguration,
    SubprocessApplyFailed,
    SubprocessDestroyFailed,
    SubprocessInitializeFailed,
)
from session import LifecycleState, ProvisioningSession, load_session_summary
from variables import RunConfiguration, build
from workspace import WorkspaceManager

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_DESTROY_FAILED = 2

DEFAULT_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f'signal {signum}'


class Interruption:
    """Cancellation token shared by the signal handler and the controller.

    notify() is called from the signal handler and only assigns plain
    attributes, so it never blocks. claim_teardown() hands out the right to
    tear down exactly once.
    """

    def __init__(self):
        self.signum: Optional[int] = None
        self.count = 0
        self._teardown_claimed = False
        self._lock = threading.Lock()

    @property
    def is_set(self) -> bool:
        return self.signum is not None

    @property
    def teardown_claimed(self) -> bool:
        return self._teardown_claimed

    def notify(self, signum: int) -> bool:
        """Record a signal. Returns True for the first one."""
        self.count += 1
        if self.signum is None:
            self.signum = signum
            return True
        return False

    def wait(self, poll_interval: float = 0.25) -> int:
        """Block until a signal has been recorded, then return it."""
        while self.signum is None:
            time.sleep(poll_interval)
        return self.signum

    def claim_teardown(self) -> bool:
        """Return True exactly once per token."""
        with self._lock:
            if self._teardown_claimed:
                return False
            self._teardown_claimed = True
            return True


@contextmanager
def handle_signals(handler: Callable, signums: Iterable[int] = DEFAULT_SIGNALS):
    """Install handler for signums, restoring the previous handlers on exit.

    Signal handlers can only be installed from the main thread; elsewhere
    the block runs without them.
    """
    previous = {}
    if threading.current_thread() is threading.main_thread():
        for signum in signums:
            previous[signum] = signal.signal(signum, handler)
    else:
        logger.warning("Not on the main thread, signal-triggered teardown is unavailable")
    try:
        yield
    finally:
        for signum, prev in previous.items():
            signal.signal(signum, prev)


@dataclass
class DeployResult:
    """Outcome of deploy or undeploy."""
    state: LifecycleState
    outputs: dict = field(default_factory=dict)
    error: Optional[FuocoError] = None
    destroy_succeeded: Optional[bool] = None
    signal: Optional[str] = None
    preserved_state: Optional[Path] = None

    @property
    def success(self) -> bool:
        return self.error is None and self.destroy_succeeded is not False

    @property
    def exit_code(self) -> int:
        if self.destroy_succeeded is False:
            return EXIT_DESTROY_FAILED
        if self.error is not None:
            return EXIT_FAILURE
        return EXIT_OK


class LifecycleController:
    """Drives one provisioning session from deploy to teardown.

    Args:
        driver: External tool driver (TerraformDriver or a test double)
        workspaces: Workspace manager
        settings: Settings (provider defaults for variable resolution)
        signums: Signals that trigger teardown
        poll_interval: Seconds between token checks while running
        environ: Environment mapping for variable resolution
        home: Home directory for SSH key detection
    """

    def __init__(
        self,
        driver: Optional[TerraformDriver] = None,
        workspaces: Optional[WorkspaceManager] = None,
        settings: Optional[Settings] = None,
        signums: Iterable[int] = DEFAULT_SIGNALS,
        poll_interval: float = 0.25,
        environ: Optional[dict] = None,
        home: Optional[Path] = None,
    ):
        self.settings = settings or Settings()
        self.driver = driver or TerraformDriver(binary=self.settings.binary, debug=self.settings.debug)
        self.workspaces = workspaces or WorkspaceManager(self.settings)
        self.signums = tuple(signums)
        self.poll_interval = poll_interval
        self.environ = environ
        self.home = home
        self.session: Optional[ProvisioningSession] = None
        self.interruption = Interruption()
        self._forwarded = False

    # ------------------------------------------------------------------
    # Signal handling
    # ------------------------------------------------------------------

    def handle_signal(self, signum, frame=None) -> None:
        """Signal handler: record the interruption and react to the current state."""
        first = self.interruption.notify(signum)
        name = signal_name(signum)
        session = self.session
        state = session.state if session else LifecycleState.IDLE

        if self.interruption.teardown_claimed or state is LifecycleState.DESTROYING:
            logger.warning(f"Received {name}, teardown already in progress")
            return

        if state in (LifecycleState.INITIALIZING, LifecycleState.APPLYING):
            process = session.process if session else None
            if process is not None and not self._forwarded and process.poll() is None:
                self._forwarded = True
                logger.warning(f"Received {name} during {state.value}, stopping {self.driver.binary}...")
                process.send_signal(signal.SIGINT)
            else:
                logger.warning(f"Received {name} during {state.value}, waiting for it to stop")
            return

        if first:
            logger.info(f"Received {name}, starting teardown")
        else:
            logger.info(f"Received {name} again ({self.interruption.count} total), teardown is pending")

    def _track(self, session: ProvisioningSession) -> Callable:
        def on_start(process):
            session.process = process
            # A signal that raced with the launch is forwarded now
            if self.interruption.is_set and not self._forwarded:
                self._forwarded = True
                process.send_signal(signal.SIGINT)
        return on_start

    def _check_interrupted(self, phase: str) -> None:
        if self.interruption.is_set:
            raise InterruptedDuringApply(signal_name(self.interruption.signum), phase)

    # ------------------------------------------------------------------
    # Deploy
    # ------------------------------------------------------------------

    def deploy(
        self,
        config: RunConfiguration,
        on_running: Optional[Callable[[ProvisioningSession], None]] = None,
        on_resolved: Optional[Callable[[ProvisioningSession], None]] = None,
    ) -> DeployResult:
        """Provision, wait for an interruption, then tear down.

        Configuration errors (UnknownProvider, MissingRequiredVariable) are
        raised before any workspace or subprocess is touched. Every later
        error is recorded in the result and forces teardown.

        Args:
            config: Run configuration
            on_running: Called once resources are live (e.g. to print outputs)
            on_resolved: Called with the new session before anything is provisioned
        """
        descriptor = catalog.resolve(config.provider)
        variables = build(config, descriptor, environ=self.environ, home=self.home, settings=self.settings)
        for notice in variables.notices:
            logger.info(notice)

        session = ProvisioningSession(config=config, variables=variables)
        self.session = session
        self.interruption = Interruption()
        self._forwarded = False
        error: Optional[FuocoError] = None
        if on_resolved is not None:
            on_resolved(session)

        with handle_signals(self.handle_signal, self.signums):
            try:
                self._provision(session, descriptor)
                if on_running is not None:
                    on_running(session)
                signum = self.interruption.wait(self.poll_interval)
                logger.info(f"{signal_name(signum)} received: starting destroy...")
            except FuocoError as e:
                error = e
                session.fail(str(e))
                logger.error(str(e))
            except BaseException as e:
                session.fail(f"unexpected error: {e!r}")
                logger.error(f"Unexpected error, tearing down: {e!r}")
                raise
            finally:
                preserved = self._teardown(session)

        return DeployResult(
            state=session.state,
            outputs=dict(session.outputs),
            error=error,
            destroy_succeeded=session.destroy_succeeded,
            signal=signal_name(self.interruption.signum) if self.interruption.is_set else None,
            preserved_state=preserved,
        )

    def _provision(self, session: ProvisioningSession, descriptor) -> None:
        """Prepare the workspace, run init then apply, and enter running."""
        session.workspace = self.workspaces.prepare(descriptor, session.variables.region)
        self._check_interrupted('startup')

        session.transition(LifecycleState.INITIALIZING)
        try:
            self.driver.initialize(session.workspace, on_start=self._track(session))
        except SubprocessInitializeFailed as e:
            if self.interruption.is_set:
                raise InterruptedDuringApply(signal_name(self.interruption.signum), 'init') from e
            raise
        finally:
            session.process = None
        self._check_interrupted('init')

        session.transition(LifecycleState.APPLYING)
        session.apply_started = True
        try:
            outcome = self.driver.apply(session.workspace, session.variables, on_start=self._track(session))
        except SubprocessApplyFailed as e:
            if self.interruption.is_set:
                raise InterruptedDuringApply(signal_name(self.interruption.signum), 'apply') from e
            raise
        finally:
            session.process = None

        session.outputs = dict(outcome.outputs)
        session.transition(LifecycleState.RUNNING)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def _teardown(self, session: ProvisioningSession) -> Optional[Path]:
        """Destroy (if apply was launched) and dispose, exactly once.

        Returns:
            Path of the preserved state file if destroy failed, else None
        """
        if not self.interruption.claim_teardown():
            logger.debug("Teardown already claimed")
            return None

        preserved = None
        try:
            if session.state not in (LifecycleState.RUNNING, LifecycleState.FAILED):
                session.fail(f"aborted during {session.state.value}")

            if session.needs_destroy:
                session.transition(LifecycleState.DESTROYING)
                preserved = self._destroy(session)
        finally:
            if session.workspace is not None:
                try:
                    self.workspaces.dispose(session.workspace)
                except OSError as e:
                    logger.error(f"Could not remove workspace {session.workspace.path}: {e}")
            session.transition(LifecycleState.TERMINATED)
        return preserved

    def _destroy(self, session: ProvisioningSession) -> Optional[Path]:
        """Run destroy; on failure report it and preserve the state file."""
        assert session.workspace is not None
        result = self.driver.destroy(session.workspace, session.variables)
        session.destroy_succeeded = result.success
        if result.success:
            logger.info("Resources destroyed")
            return None

        failure = SubprocessDestroyFailed(result.returncode, result.output)
        if session.error is None:
            session.error = str(failure)
        preserved = self.workspaces.preserve_state(session.workspace)
        region = session.variables.get('region')
        logger.error("!" * 62)
        logger.error(f"{failure}: cloud resources may still be running")
        if preserved:
            logger.error(f"State preserved at {preserved}")
        logger.error(f"Retry with: fuoco undeploy -c {session.config.provider.value} -r {region}")
        logger.error("!" * 62)
        return preserved

    # ------------------------------------------------------------------
    # Undeploy
    # ------------------------------------------------------------------

    def undeploy(self, config: RunConfiguration) -> DeployResult:
        """Destroy the resources of a run whose controlling process exited.

        Reconstructs the deterministic workspace from provider and region,
        then runs init and destroy directly (no apply).

        Raises:
            InvalidConfiguration: If no region is given
        """
        if not config.region:
            raise InvalidConfiguration("undeploy requires an explicit region")

        descriptor = catalog.resolve(config.provider)
        variables = build(config, descriptor, environ=self.environ, home=self.home, settings=self.settings)
        session = ProvisioningSession(config=config, variables=variables)
        self.session = session
        self.interruption = Interruption()
        self._forwarded = False
        error: Optional[FuocoError] = None
        preserved = None

        with handle_signals(self.handle_signal, self.signums):
            # Undeploy is teardown from the start; signals are only logged
            self.interruption.claim_teardown()
            try:
                workspace = self.workspaces.locate(descriptor, variables.region)
                if workspace is not None:
                    summary = load_session_summary(workspace)
                    if summary:
                        logger.info(
                            f"Found workspace from earlier run (state: {summary.get('state')}, "
                            f"outputs: {summary.get('outputs', {})})"
                        )
                    else:
                        logger.info(f"Found workspace {workspace.path}")
                else:
                    workspace = self.workspaces.prepare(descriptor, variables.region, restoring=True)
                    if not self.workspaces.restore_state(workspace):
                        logger.info("No state from an earlier run found, destroy will be a no-op")
                session.workspace = workspace
                session.apply_started = True
                session.transition(LifecycleState.DESTROYING)

                self.driver.initialize(workspace)
                preserved = self._destroy(session)
                if session.destroy_succeeded:
                    self.workspaces.discard_backup(workspace)
            except FuocoError as e:
                error = e
                session.error = session.error or str(e)
                logger.error(str(e))
                if session.workspace is not None and session.destroy_succeeded is None:
                    session.destroy_succeeded = False
                    preserved = self.workspaces.preserve_state(session.workspace)
            finally:
                if session.workspace is not None:
                    try:
                        self.workspaces.dispose(session.workspace)
                    except OSError as e:
                        logger.error(f"Could not remove workspace {session.workspace.path}: {e}")
                if session.state is LifecycleState.IDLE:
                    session.transition(LifecycleState.FAILED)
                session.transition(LifecycleState.TERMINATED)

        return DeployResult(
            state=session.state,
            error=error,
            destroy_succeeded=session.destroy_succeeded,
            preserved_state=preserved,
        )
