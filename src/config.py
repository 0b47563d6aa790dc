"""Run configuration management.

Configuration is loaded from the workspace directory:
- stackplan.yaml: Optional workspace settings (defaults + provider sections)
- stacks/*.yaml: Stack declarations (see stack.py)
- .states/: State records, locks and reports

Resolution order for the workspace:
1. $STACKPLAN_HOME environment variable
2. Current working directory

The merge order is: built-in defaults -> stackplan.yaml -> environment -> CLI flags.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

CONFIG_FILENAME = 'stackplan.yaml'

PROVIDER_KINDS = ('local', 'http')


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class RunConfig:
    """Settings for a plan/apply run.

    Attributes:
        workspace: Workspace root directory
        state_dir: Directory holding per-stack state records
        stacks_dir: Directory holding named stack files
        concurrency: Max operations applied in parallel (1 = sequential)
        max_attempts: Attempts per provider call before giving up on transient errors
        backoff_base: First retry delay in seconds
        backoff_max: Cap on retry delay in seconds
        poll_interval: Seconds between status polls for in-progress operations
        poll_timeout: Seconds to wait for an in-progress operation
        provider_kind: 'local' (file-backed in-process provider) or 'http'
        provider_endpoint: Control-plane base URL (http provider)
        provider_path: Backing file for the local provider
        reports: Write JSON/markdown run reports
    """
    workspace: Path
    state_dir: Path
    stacks_dir: Path
    concurrency: int = 1
    max_attempts: int = 5
    backoff_base: float = 0.5
    backoff_max: float = 20.0
    poll_interval: float = 2.0
    poll_timeout: float = 600.0
    provider_kind: str = 'local'
    provider_endpoint: str = ''
    provider_path: Optional[Path] = None
    provider_timeout: float = 30.0
    reports: bool = False

    # Resolved from env or stackplan.yaml, never printed
    _provider_token: str = field(default='', init=False, repr=False)

    def __post_init__(self):
        if isinstance(self.workspace, str):
            self.workspace = Path(self.workspace)
        if isinstance(self.state_dir, str):
            self.state_dir = Path(self.state_dir)
        if isinstance(self.stacks_dir, str):
            self.stacks_dir = Path(self.stacks_dir)
        if self.provider_path is None:
            self.provider_path = self.state_dir / 'provider.json'
        self.validate()

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ConfigError: If a value is out of range
        """
        if self.concurrency < 1:
            raise ConfigError(f"concurrency must be >= 1, got {self.concurrency}")
        if self.max_attempts < 1:
            raise ConfigError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.backoff_base < 0 or self.backoff_max < 0:
            raise ConfigError("backoff values must be non-negative")
        if self.poll_interval <= 0 or self.poll_timeout <= 0:
            raise ConfigError("poll_interval and poll_timeout must be positive")
        if self.provider_kind not in PROVIDER_KINDS:
            raise ConfigError(
                f"Unknown provider kind '{self.provider_kind}'. "
                f"Supported: {', '.join(PROVIDER_KINDS)}"
            )

    def get_provider_token(self) -> str:
        return self._provider_token

    def set_provider_token(self, token: str) -> None:
        self._provider_token = token


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must be a YAML object (dict)")
    return data


def get_workspace_dir() -> Path:
    """Discover the workspace directory.

    Resolution order:
    1. $STACKPLAN_HOME environment variable
    2. Current working directory
    """
    if env_path := os.environ.get('STACKPLAN_HOME'):
        path = Path(env_path)
        if path.is_dir():
            return path
        raise ConfigError(f"STACKPLAN_HOME={env_path} does not exist")
    return Path.cwd()


def _env_int(name: str) -> Optional[int]:
    value = os.environ.get(name)
    if value is None or value == '':
        return None
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got '{value}'")


def load_run_config(workspace: Optional[Path] = None) -> RunConfig:
    """Load run configuration for a workspace.

    Args:
        workspace: Workspace root. Default: get_workspace_dir()

    Returns:
        RunConfig with file, environment and default values merged

    Raises:
        ConfigError: If stackplan.yaml is invalid or a value is out of range
    """
    if workspace is None:
        workspace = get_workspace_dir()
    workspace = Path(workspace)

    data: dict = {}
    config_file = workspace / CONFIG_FILENAME
    if config_file.exists():
        data = _parse_yaml(config_file)

    defaults = data.get('defaults') or {}
    provider = data.get('provider') or {}
    if not isinstance(defaults, dict) or not isinstance(provider, dict):
        raise ConfigError(f"{config_file}: 'defaults' and 'provider' must be mappings")

    state_dir = workspace / defaults.get('state_dir', '.states')
    stacks_dir = workspace / defaults.get('stacks_dir', 'stacks')

    provider_path = provider.get('path')
    try:
        config = RunConfig(
            workspace=workspace,
            state_dir=state_dir,
            stacks_dir=stacks_dir,
            concurrency=int(defaults.get('concurrency', 1)),
            max_attempts=int(defaults.get('max_attempts', 5)),
            backoff_base=float(defaults.get('backoff_base', 0.5)),
            backoff_max=float(defaults.get('backoff_max', 20.0)),
            poll_interval=float(defaults.get('poll_interval', 2.0)),
            poll_timeout=float(defaults.get('poll_timeout', 600.0)),
            provider_kind=provider.get('kind', 'local'),
            provider_endpoint=provider.get('endpoint', ''),
            provider_path=workspace / provider_path if provider_path else None,
            provider_timeout=float(provider.get('timeout', 30.0)),
            reports=bool(defaults.get('reports', False)),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value in {config_file}: {e}")

    # Environment overrides
    if endpoint := os.environ.get('STACKPLAN_PROVIDER_ENDPOINT'):
        config.provider_endpoint = endpoint
        config.provider_kind = 'http'
    if (concurrency := _env_int('STACKPLAN_CONCURRENCY')) is not None:
        config.concurrency = concurrency
        config.validate()

    config.set_provider_token(
        os.environ.get('STACKPLAN_PROVIDER_TOKEN', provider.get('token', ''))
    )
    return config


def list_stacks(config: RunConfig) -> list[str]:
    """List stack names available in the stacks directory."""
    if not config.stacks_dir.exists():
        return []
    return sorted(
        f.stem for f in config.stacks_dir.glob('*.yaml') if f.is_file()
    )
