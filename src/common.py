"""Common utilities and types for driving the external provisioning tool."""

import logging
import subprocess
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, TextIO

logger = logging.getLogger(__name__)


@dataclass
class PhaseResult:
    """Result returned by an external tool phase."""
    success: bool
    message: str = ''
    duration: float = 0.0
    returncode: int = 0
    output: str = ''
    outputs: dict = field(default_factory=dict)


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: int = 600,
    capture: bool = True,
    env: Optional[dict] = None
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr)."""
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=capture,
            text=True,
            timeout=timeout,
            env=env,
            check=False  # We handle return codes explicitly
        )
        return result.returncode, result.stdout, result.stderr
    except subprocess.TimeoutExpired:
        return -1, '', f'Command timed out after {timeout}s'
    except Exception as e:
        return -1, '', str(e)


def stream_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    env: Optional[dict] = None,
    echo: bool = False,
    timeout: Optional[float] = None,
    on_start: Optional[Callable[[subprocess.Popen], None]] = None,
    stream: Optional[TextIO] = None,
) -> tuple[int, str]:
    """Run a command, capturing combined stdout/stderr line by line.

    The child runs in its own session so a terminal Ctrl+C reaches only
    this process; the caller decides whether to forward it.
    Undecodable bytes are replaced. The child never outlives this call: if
    reading fails it is killed before the error propagates.

    Args:
        cmd: Command and arguments
        cwd: Working directory
        env: Environment for the child
        echo: Write each line to stream as it arrives (debug mode)
        timeout: Kill the child after this many seconds (None = no limit)
        on_start: Called with the Popen handle once the child is running
        stream: Echo target (defaults to sys.stdout)

    Returns:
        (returncode, output) tuple. returncode is -1 if the command could
        not be started or was killed by the timeout.
    """
    logger.debug(f"Running: {' '.join(cmd)}")
    stream = stream or sys.stdout
    try:
        proc = subprocess.Popen(
            cmd,
            cwd=cwd,
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors='replace',
            bufsize=1,
            start_new_session=True,
        )
    except OSError as e:
        return -1, str(e)

    timed_out = threading.Event()
    watchdog = None
    if timeout:
        def _expire():
            timed_out.set()
            proc.kill()
        watchdog = threading.Timer(timeout, _expire)
        watchdog.daemon = True
        watchdog.start()

    lines = []
    try:
        if on_start is not None:
            on_start(proc)
        assert proc.stdout is not None
        for line in proc.stdout:
            lines.append(line)
            if echo:
                stream.write(line)
                stream.flush()
        proc.wait()
    finally:
        if watchdog is not None:
            watchdog.cancel()
        if proc.poll() is None:
            proc.kill()
            proc.wait()
        if proc.stdout is not None:
            proc.stdout.close()

    output = ''.join(lines)
    if timed_out.is_set():
        return -1, output + f'\nCommand timed out after {timeout}s\n'
    return proc.returncode, output
