"""OpenTofu / Terraform command wrapper.

The engine always runs in the engine root (the directory holding the *.tf
files) without color or interactive input. Each operation has its own
timeout. Results are returned, not raised; the orchestrator decides how a
failed stage ends the run. State queries raise StateQueryError since their
callers only want data.
"""

import logging
import os
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from common import is_timeout, run_command
from config import DEFAULT_TIMEOUTS
from errors import StateQueryError

logger = logging.getLogger(__name__)

LOCK_MESSAGE = 'Error acquiring the state lock'
NO_STATE_MESSAGE = 'No state file was found'

# "vmid" = "100"  inside a state show block
_ATTRIBUTE_LINE = re.compile(r'^\s*"?([\w.-]+)"?\s*=\s*"?(.*?)"?\s*$')


@dataclass
class EngineResult:
    """Outcome of one engine invocation."""
    ok: bool
    rc: int
    stdout: str = ''
    stderr: str = ''
    duration: float = 0.0
    locked: bool = False
    timed_out: bool = False

    def detail(self, lines: int = 5) -> str:
        """Last few meaningful lines of engine output, for diagnostics."""
        text = self.stderr.strip() or self.stdout.strip()
        tail = [line for line in text.splitlines() if line.strip()][-lines:]
        return '\n'.join(tail)


@dataclass
class PlanResult(EngineResult):
    """Plan outcome: 'changes', 'noop', or 'error'."""
    outcome: str = 'error'
    plan_file: Optional[Path] = None


class ApplyEngine:
    """Runs tofu (or terraform) in the engine root."""

    def __init__(self, root: Path, binary: str = 'tofu', timeouts: Optional[dict] = None,
                 env: Optional[dict] = None):
        self.root = Path(root)
        self.binary = binary
        self.timeouts = {**DEFAULT_TIMEOUTS, **(timeouts or {})}
        self.env = {**os.environ, 'TF_IN_AUTOMATION': '1', **(env or {})}

    def _run(self, operation: str, args: list[str]) -> EngineResult:
        timeout = int(self.timeouts.get(operation, 600))
        cmd = [self.binary, *args]
        start = time.time()
        rc, out, err = run_command(cmd, cwd=self.root, timeout=timeout, env=self.env)
        duration = time.time() - start
        result = EngineResult(
            ok=rc == 0,
            rc=rc,
            stdout=out,
            stderr=err,
            duration=duration,
            locked=LOCK_MESSAGE in err or LOCK_MESSAGE in out,
            timed_out=is_timeout(rc, err),
        )
        if result.locked:
            logger.error(f"{self.binary} {operation}: state is locked by another run")
        elif result.timed_out:
            logger.error(f"{self.binary} {operation} timed out after {timeout}s")
        elif rc != 0:
            logger.debug(f"{self.binary} {operation} exited {rc}: {result.detail()}")
        return result

    def init(self) -> EngineResult:
        logger.info(f"Running {self.binary} init -upgrade...")
        return self._run('init', ['init', '-upgrade', '-input=false', '-no-color'])

    def validate(self) -> EngineResult:
        logger.info(f"Running {self.binary} validate...")
        return self._run('validate', ['validate', '-no-color'])

    def plan(self, var_file: Path, plan_file: Path) -> PlanResult:
        """Plan against var_file, writing the saved plan to plan_file.

        Uses -detailed-exitcode: 0 means no changes, 2 means changes pending.
        """
        logger.info(f"Running {self.binary} plan (var-file: {var_file})...")
        result = self._run('plan', [
            'plan', '-input=false', '-no-color', '-detailed-exitcode',
            f'-var-file={var_file}', f'-out={plan_file}',
        ])
        if result.rc == 0:
            outcome = 'noop'
        elif result.rc == 2:
            outcome = 'changes'
        else:
            outcome = 'error'
        return PlanResult(
            ok=outcome != 'error',
            rc=result.rc,
            stdout=result.stdout,
            stderr=result.stderr,
            duration=result.duration,
            locked=result.locked,
            timed_out=result.timed_out,
            outcome=outcome,
            plan_file=Path(plan_file),
        )

    def apply(self, plan_file: Path) -> EngineResult:
        """Apply exactly the saved plan."""
        logger.info(f"Running {self.binary} apply {plan_file}...")
        return self._run('apply', ['apply', '-input=false', '-no-color', '-auto-approve', str(plan_file)])

    def state_list(self) -> list[str]:
        """List resource addresses in applied state.

        Raises:
            StateQueryError: engine could not read its state
        """
        result = self._run('state', ['state', 'list'])
        if not result.ok:
            if NO_STATE_MESSAGE in result.stderr:
                return []
            raise StateQueryError(
                f"{self.binary} state list failed: {result.detail() or f'exit {result.rc}'}"
            )
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def state_show(self, address: str) -> dict[str, str]:
        """Return the string attributes recorded for one resource.

        Only the quoted key = value lines are collected, which for
        null_resource entries are the triggers map.

        Raises:
            StateQueryError: engine could not show the resource
        """
        result = self._run('state', ['state', 'show', '-no-color', address])
        if not result.ok:
            raise StateQueryError(f"{self.binary} state show {address} failed: {result.detail()}")
        return parse_state_show(result.stdout)


def parse_state_show(output: str) -> dict[str, str]:
    """Extract trigger attributes from `state show` output."""
    attributes: dict[str, str] = {}
    in_triggers = False
    for line in output.splitlines():
        stripped = line.strip()
        if stripped.startswith('triggers') and stripped.endswith('{'):
            in_triggers = True
            continue
        if in_triggers:
            if stripped.startswith('}'):
                in_triggers = False
                continue
            if match := _ATTRIBUTE_LINE.match(line):
                attributes[match.group(1)] = match.group(2)
    return attributes
