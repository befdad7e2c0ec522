"""External provisioning tool driver (terraform / tofu).

Runs the three phases against a prepared workspace:
- init: download providers, set up the working directory
- apply: create resources, parse the Outputs: block
- destroy: tear resources down (never raises)

In debug mode each phase streams its output live; otherwise output is
buffered and only surfaced when the phase fails.
"""

import json
import logging
import os
import re
import textwrap
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from common import PhaseResult, stream_command
from errors import SubprocessApplyFailed, SubprocessInitializeFailed
from variables import VariableSet
from workspace import Workspace

logger = logging.getLogger(__name__)

TFVARS_FILE = 'fuoco.tfvars.json'

# key = value inside the Outputs: block of apply
_OUTPUT_LINE = re.compile(r'^([A-Za-z_][A-Za-z0-9_-]*)\s*=\s*(.*)$')
_ANSI = re.compile(r'\x1b\[[0-9;]*m')
_HEREDOC = re.compile(r'^<<(-?)([A-Za-z_]\w*)$')


def parse_outputs(stdout: str) -> dict[str, str]:
    """Extract named outputs from apply stdout.

    Handles the trailing block printed by terraform/tofu:

        Outputs:

        public_ip = "203.0.113.7"
        region = "eu-west-1"

    Quoted strings are unquoted; multi-line values (lists, maps) are kept
    as their raw text. Heredoc strings (<<EOT ... EOT) become their body.
    Sensitive outputs ('<sensitive>') are kept as-is.
    """
    outputs: dict[str, str] = {}
    in_block = False
    current: Optional[str] = None
    depth = 0
    heredoc: Optional[re.Match] = None
    body: list[str] = []

    for raw in _ANSI.sub('', stdout).splitlines():
        line = raw.rstrip()
        if heredoc is not None:
            if line.strip() == heredoc.group(2):
                text = '\n'.join(body) + '\n' if body else ''
                outputs[current] = textwrap.dedent(text) if heredoc.group(1) else text
                current, heredoc = None, None
            else:
                body.append(line)
            continue

        if line.strip() == 'Outputs:':
            in_block = True
            outputs.clear()
            continue
        if not in_block:
            continue

        if current is not None:
            outputs[current] += '\n' + line
            depth += line.count('[') + line.count('{') - line.count(']') - line.count('}')
            if depth <= 0:
                current = None
            continue

        match = _OUTPUT_LINE.match(line.strip())
        if not match:
            continue
        key, value = match.group(1), match.group(2).strip()
        heredoc = _HEREDOC.match(value)
        if heredoc:
            outputs[key] = ''
            current, body = key, []
            continue
        depth = value.count('[') + value.count('{') - value.count(']') - value.count('}')
        if depth > 0:
            outputs[key] = value
            current = key
            continue
        if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
            try:
                value = json.loads(value)
            except ValueError:
                value = value[1:-1]
        outputs[key] = value

    return outputs


@dataclass
class ApplyOutcome:
    """Successful apply: parsed outputs plus the raw phase result."""
    outputs: dict
    result: PhaseResult

    @property
    def public_ip(self) -> Optional[str]:
        return self.outputs.get('public_ip')


class TerraformDriver:
    """Runs terraform-compatible phases as subprocesses.

    Args:
        binary: Executable name or path (terraform, tofu)
        debug: Stream output live instead of buffering it
        timeout: Per-phase timeout in seconds (None = no limit)
        env: Extra environment for the child processes
    """

    def __init__(
        self,
        binary: str = 'terraform',
        debug: bool = False,
        timeout: Optional[float] = None,
        env: Optional[dict] = None,
    ):
        self.binary = binary
        self.debug = debug
        self.timeout = timeout
        self.env = env or {}

    def _env(self) -> dict:
        return {**os.environ, 'TF_IN_AUTOMATION': '1', **self.env}

    def _run(self, args: list[str], workspace: Workspace, on_start=None) -> tuple[int, str]:
        cmd = [self.binary, *args]
        return stream_command(
            cmd,
            cwd=workspace.path,
            env=self._env(),
            echo=self.debug,
            timeout=self.timeout,
            on_start=on_start,
        )

    def write_tfvars(self, workspace: Workspace, variables: VariableSet) -> Path:
        """Write resolved variables as tfvars JSON into the workspace."""
        path = workspace.path / TFVARS_FILE
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(variables.to_tfvars(), f, indent=2)
        if variables.sensitive:
            path.chmod(0o600)
        return path

    def _surface(self, phase: str, output: str) -> None:
        """Log buffered output of a failed phase (already visible in debug mode)."""
        if self.debug or not output.strip():
            return
        logger.error(f"{self.binary} {phase} output:\n{output.rstrip()}")

    def initialize(self, workspace: Workspace, on_start: Optional[Callable] = None) -> PhaseResult:
        """Run the init phase.

        Raises:
            SubprocessInitializeFailed: On non-zero exit
        """
        start = time.time()
        logger.info(f"Running {self.binary} init...")
        rc, output = self._run(['init', '-input=false', '-no-color'], workspace, on_start)
        if rc != 0:
            self._surface('init', output)
            raise SubprocessInitializeFailed(rc, output)
        return PhaseResult(
            success=True,
            message=f"{self.binary} init completed",
            duration=time.time() - start,
            output=output,
        )

    def apply(
        self,
        workspace: Workspace,
        variables: VariableSet,
        on_start: Optional[Callable] = None,
    ) -> ApplyOutcome:
        """Run the apply phase and parse its outputs.

        Raw output of a failed apply is always logged, regardless of debug.

        Raises:
            SubprocessApplyFailed: On non-zero exit
        """
        start = time.time()
        tfvars = self.write_tfvars(workspace, variables)
        logger.info(f"Running {self.binary} apply (region: {variables.region})...")
        rc, output = self._run(
            ['apply', '-auto-approve', '-input=false', '-no-color', f'-var-file={tfvars.name}'],
            workspace, on_start,
        )
        if rc != 0:
            if self.debug:
                logger.error(f"{self.binary} apply failed (exit {rc}), see output above")
            else:
                logger.error(f"{self.binary} apply output:\n{output.rstrip()}")
            raise SubprocessApplyFailed(rc, output)

        outputs = parse_outputs(output)
        result = PhaseResult(
            success=True,
            message=f"{self.binary} apply completed",
            duration=time.time() - start,
            output=output,
            outputs=outputs,
        )
        return ApplyOutcome(outputs=outputs, result=result)

    def destroy(
        self,
        workspace: Workspace,
        variables: VariableSet,
        on_start: Optional[Callable] = None,
    ) -> PhaseResult:
        """Run the destroy phase. Never raises.

        Destroying an already-destroyed workspace is a no-op for the tool
        and succeeds.
        """
        start = time.time()
        try:
            tfvars = self.write_tfvars(workspace, variables)
            logger.info(f"Running {self.binary} destroy...")
            rc, output = self._run(
                ['destroy', '-auto-approve', '-input=false', '-no-color', f'-var-file={tfvars.name}'],
                workspace, on_start,
            )
        except Exception as e:
            logger.error(f"{self.binary} destroy could not run: {e}")
            return PhaseResult(
                success=False,
                message=f"{self.binary} destroy could not run: {e}",
                duration=time.time() - start,
                returncode=-1,
            )

        if rc != 0:
            self._surface('destroy', output)
            logger.error(f"{self.binary} destroy failed (exit {rc})")
            return PhaseResult(
                success=False,
                message=f"{self.binary} destroy failed (exit {rc})",
                duration=time.time() - start,
                returncode=rc,
                output=output,
            )

        return PhaseResult(
            success=True,
            message=f"{self.binary} destroy completed",
            duration=time.time() - start,
            output=output,
        )
