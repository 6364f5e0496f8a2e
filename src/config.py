"""Driver configuration management.

Configuration is loaded from a single YAML file:
- $THINKDEPLOY_CONFIG, when set (must exist)
- thinkdeploy.yaml in the engine root (the directory holding main.tf)
- built-in defaults otherwise

Environment variables override file values:
- THINKDEPLOY_ENGINE: apply engine binary (tofu or terraform)
- THINKDEPLOY_ROOT: engine root directory
- THINKDEPLOY_ALLOW_DESTROY=true: allow destructive transitions
- THINKDEPLOY_FORCE_VM_RECREATE=true: issue a fresh re-apply token
- TF_VAR_pm_ssh_host / TF_VAR_pm_ssh_user / TF_VAR_pm_ssh_private_key_path
- VALIDATION_TIMEOUT: per-query platform timeout in seconds
- THINKDEPLOY_API_ENDPOINT / THINKDEPLOY_API_TOKEN: HTTP API transport
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from desired_state import coerce_value
from errors import ConfigurationError

ENGINE_MARKER = 'main.tf'
CONFIG_FILENAME = 'thinkdeploy.yaml'

DEFAULT_TIMEOUTS = {
    'init': 300,
    'validate': 120,
    'plan': 600,
    'apply': 1800,
    'state': 60,
}


@dataclass
class DriverConfig:
    """Settings for one deployment run."""
    engine_root: Path
    engine_binary: str = 'tofu'
    timeouts: dict = field(default_factory=lambda: dict(DEFAULT_TIMEOUTS))

    # Platform queries (cluster detection, preflight)
    transport: str = 'ssh'  # 'ssh' or 'api'
    connect_timeout: int = 5
    command_timeout: int = 20
    api_endpoint: str = ''
    api_token: str = field(default='', repr=False)

    # Default connection, used when the collector document has none
    ssh_host: str = 'localhost'
    ssh_user: str = 'root'
    ssh_key: str = '~/.ssh/id_rsa'

    allow_destroy: bool = False
    force_recreate: bool = False
    reports_dir: Optional[Path] = None
    config_file: Optional[Path] = None

    def __post_init__(self):
        if isinstance(self.engine_root, str):
            self.engine_root = Path(self.engine_root)
        if self.reports_dir is None:
            self.reports_dir = self.engine_root / 'reports'
        elif isinstance(self.reports_dir, str):
            self.reports_dir = Path(self.reports_dir)
        if self.transport not in ('ssh', 'api'):
            raise ConfigurationError(
                f"Unknown platform transport '{self.transport}'",
                remedy="Set platform.transport to 'ssh' or 'api'",
            )
        if self.transport == 'api' and not self.api_endpoint:
            raise ConfigurationError(
                "The api transport needs an endpoint",
                remedy="Set platform.api_endpoint in thinkdeploy.yaml or THINKDEPLOY_API_ENDPOINT",
            )

    def timeout_for(self, operation: str) -> int:
        """Timeout in seconds for an engine operation."""
        return int(self.timeouts.get(operation, DEFAULT_TIMEOUTS.get(operation, 600)))

    @property
    def generated_dir(self) -> Path:
        return self.engine_root / 'generated'


def get_base_dir() -> Path:
    """Get the driver checkout directory."""
    return Path(__file__).parent.parent  # src/ -> checkout/


def env_flag(name: str) -> bool:
    """Read a boolean environment flag (true/1/yes)."""
    return os.environ.get(name, '').strip().lower() in ('true', '1', 'yes')


def find_engine_root(start: Optional[Path] = None) -> Path:
    """Locate the engine root by searching upward for main.tf.

    Resolution order:
    1. $THINKDEPLOY_ROOT environment variable
    2. First ancestor of start (default: cwd) containing main.tf
    3. First ancestor of the driver checkout containing main.tf
    """
    if env_path := os.environ.get('THINKDEPLOY_ROOT'):
        path = Path(env_path).expanduser()
        if not (path / ENGINE_MARKER).exists():
            raise ConfigurationError(
                f"THINKDEPLOY_ROOT={env_path} has no {ENGINE_MARKER}",
                remedy="Point THINKDEPLOY_ROOT at the directory holding the *.tf files",
            )
        return path.resolve()

    for origin in (start or Path.cwd(), get_base_dir()):
        current = Path(origin).resolve()
        for candidate in (current, *current.parents):
            if (candidate / ENGINE_MARKER).exists():
                return candidate

    raise ConfigurationError(
        f"Could not find {ENGINE_MARKER} in the current directory or any parent",
        remedy="Run from inside the deployment repository or set THINKDEPLOY_ROOT",
    )


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a mapping at top level")
    return data


def _config_path(engine_root: Path, explicit: Optional[Path]) -> Optional[Path]:
    if explicit:
        if not explicit.exists():
            raise ConfigurationError(f"Config file not found: {explicit}")
        return explicit
    if env_path := os.environ.get('THINKDEPLOY_CONFIG'):
        path = Path(env_path).expanduser()
        if not path.exists():
            raise ConfigurationError(f"THINKDEPLOY_CONFIG={env_path} does not exist")
        return path
    candidate = engine_root / CONFIG_FILENAME
    return candidate if candidate.exists() else None


def load_config(config_file: Optional[Path] = None,
                engine_root: Optional[Path] = None) -> DriverConfig:
    """Load driver configuration with environment overrides applied."""
    root = engine_root or find_engine_root()
    path = _config_path(root, config_file)
    raw = _parse_yaml(path) if path else {}

    engine = raw.get('engine') or {}
    platform = raw.get('platform') or {}
    connection = raw.get('connection') or {}
    safety = raw.get('safety') or {}

    timeouts = dict(DEFAULT_TIMEOUTS)
    timeouts.update(engine.get('timeouts') or {})

    if engine_dir := engine.get('root'):
        root = (root / engine_dir).resolve()

    # The transport check needs these before construction
    api_endpoint = os.environ.get('THINKDEPLOY_API_ENDPOINT') or str(platform.get('api_endpoint', ''))
    api_token = os.environ.get('THINKDEPLOY_API_TOKEN') or str(platform.get('api_token', ''))

    try:
        config = DriverConfig(
            engine_root=root,
            engine_binary=str(engine.get('binary', 'tofu')),
            timeouts=timeouts,
            transport=str(platform.get('transport', 'ssh')),
            connect_timeout=int(platform.get('connect_timeout', 5)),
            command_timeout=int(platform.get('command_timeout', 20)),
            api_endpoint=api_endpoint,
            api_token=api_token,
            ssh_host=str(connection.get('host', 'localhost')),
            ssh_user=str(connection.get('user', 'root')),
            ssh_key=str(connection.get('credential_path', '~/.ssh/id_rsa')),
            allow_destroy=coerce_value('bool', safety.get('allow_destroy'), False),
            reports_dir=raw.get('reports_dir'),
            config_file=path,
        )
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value in {path}: {e}") from e

    _apply_env_overrides(config)
    return config


def _apply_env_overrides(config: DriverConfig) -> None:
    if binary := os.environ.get('THINKDEPLOY_ENGINE'):
        config.engine_binary = binary
    if env_flag('THINKDEPLOY_ALLOW_DESTROY'):
        config.allow_destroy = True
    if env_flag('THINKDEPLOY_FORCE_VM_RECREATE'):
        config.force_recreate = True
    if host := os.environ.get('TF_VAR_pm_ssh_host'):
        config.ssh_host = host
    if user := os.environ.get('TF_VAR_pm_ssh_user'):
        config.ssh_user = user
    if key := os.environ.get('TF_VAR_pm_ssh_private_key_path'):
        config.ssh_key = key
    if timeout := os.environ.get('VALIDATION_TIMEOUT'):
        try:
            config.command_timeout = int(timeout)
        except ValueError as e:
            raise ConfigurationError(f"VALIDATION_TIMEOUT must be an integer, got '{timeout}'") from e
