"""Runtime configuration for the devnet core.

A single ``Config`` value is built once (usually by ``load_config``) and passed
to every component constructor. Nothing in the core reads global state.
"""

from __future__ import annotations

import os
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from devnet import paths
from devnet.errors import ValidationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "DEVNET_"


@dataclass
class Config:
    """Explicit configuration passed into the orchestrator and friends."""
    home_dir: Path = field(default_factory=paths.default_home_dir)
    plugin_dirs: List[Path] = field(default_factory=list)

    # health checks
    health_host: str = "127.0.0.1"
    health_path: str = "/status"
    health_timeout_s: float = 60.0
    health_interval_s: float = 1.0
    health_request_timeout_s: float = 5.0

    # lifecycle deadlines
    stop_timeout_s: float = 30.0
    build_timeout_s: float = 1800.0
    lock_timeout_s: float = 30.0

    log_tail_lines: int = 50

    # node i listens on base + i * port_offset
    base_ports: Dict[str, int] = field(
        default_factory=lambda: {"rpc": 26657, "p2p": 26656, "evm_rpc": 8545}
    )
    port_offset: int = 10000

    # container mode
    k8s_namespace: str = "devnet"
    kubeconfig_path: Optional[str] = None

    log_level: str = "INFO"

    def __post_init__(self) -> None:
        self.home_dir = Path(self.home_dir).expanduser()
        if not self.plugin_dirs:
            self.plugin_dirs = [
                Path("./plugins"),
                paths.plugins_dir(self.home_dir),
                Path("/usr/local/lib/devnet-builder/plugins"),
            ]
        else:
            self.plugin_dirs = [Path(p).expanduser() for p in self.plugin_dirs]

    def ports_for(self, index: int) -> Dict[str, int]:
        offset = index * self.port_offset
        return {name: base + offset for name, base in self.base_ports.items()}


_FLOAT_KEYS = {
    "health_timeout_s",
    "health_interval_s",
    "health_request_timeout_s",
    "stop_timeout_s",
    "build_timeout_s",
    "lock_timeout_s",
}
_INT_KEYS = {"log_tail_lines", "port_offset"}


def _coerce(key: str, value: Any) -> Any:
    try:
        if key in _FLOAT_KEYS:
            return float(value)
        if key in _INT_KEYS:
            return int(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"invalid value for {key}: {value!r}") from e
    if key == "plugin_dirs" and isinstance(value, str):
        return [p for p in value.split(os.pathsep) if p]
    if key == "base_ports":
        if not isinstance(value, dict):
            raise ValidationError(f"base_ports must be a mapping, got {type(value).__name__}")
        return {str(k): int(v) for k, v in value.items()}
    return value


def load_config(path: Optional[str] = None, env: Optional[Dict[str, str]] = None) -> Config:
    """
    Build a Config from an optional YAML file and DEVNET_* environment variables.

    Args:
        path: Path to a YAML file with Config keys at the top level
        env: Environment mapping (defaults to os.environ)

    Returns:
        Config with file values applied, then environment overrides
    """
    env = os.environ if env is None else env
    known = {f.name for f in fields(Config)}
    values: Dict[str, Any] = {}

    if path:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError as e:
            raise ValidationError(f"config file not found: {path}") from e
        except yaml.YAMLError as e:
            raise ValidationError(f"failed to parse config file {path}: {e}") from e
        if not isinstance(data, dict):
            raise ValidationError(f"config file {path} must contain a mapping")

        for key, value in data.items():
            if key not in known:
                logger.warning(f"Ignoring unknown config key '{key}' in {path}")
                continue
            values[key] = _coerce(key, value)
        logger.info(f"Loaded config from {path}: {len(values)} keys")

    for key in known:
        env_key = ENV_PREFIX + key.upper()
        if env_key in env and env[env_key] != "":
            if key == "base_ports":
                logger.warning(f"{env_key} is not supported, set base_ports in the config file")
                continue
            values[key] = _coerce(key, env[env_key])
            logger.debug(f"Config override from environment: {env_key}")

    return Config(**values)
