"""Common utilities and types for deployment runs."""

import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# ssh exits 255 when the connection itself failed
SSH_TRANSPORT_ERROR = 255
TIMEOUT_RC = -1


@dataclass
class StageResult:
    """Result returned by a pipeline stage."""
    success: bool
    message: str = ''
    duration: float = 0.0
    details: dict = field(default_factory=dict)


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
        return TIMEOUT_RC, '', f'Command timed out after {timeout}s'
    except OSError as e:
        return TIMEOUT_RC, '', str(e)


def is_timeout(rc: int, err: str) -> bool:
    """True when run_command gave up on the process."""
    return rc == TIMEOUT_RC and 'timed out' in err


def run_ssh(
    host: str,
    command: str,
    user: str = 'root',
    timeout: int = 30,
    identity_file: Optional[Path] = None,
    connect_timeout: int = 5,
) -> tuple[int, str, str]:
    """Run command over SSH."""
    # PVE nodes are frequently reinstalled; known_hosts would go stale
    ssh_opts = '-o StrictHostKeyChecking=no -o UserKnownHostsFile=/dev/null -o LogLevel=ERROR -o BatchMode=yes'

    cmd = ['ssh'] + ssh_opts.split() + ['-o', f'ConnectTimeout={connect_timeout}']
    if identity_file:
        cmd += ['-i', str(identity_file)]
    cmd += [f'{user}@{host}', command]

    return run_command(cmd, timeout=timeout)
