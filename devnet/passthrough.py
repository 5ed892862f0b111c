"""Run the active node binary of a plugin with arbitrary arguments."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
from typing import Dict, List, Optional

from devnet.cache import active_binary
from devnet.config import Config
from devnet.errors import IOFailure, NotFound, ValidationError
from devnet.plugins import PluginRegistry

logger = logging.getLogger(__name__)


def exit_code(returncode: int) -> int:
    """Map a Popen return code to a shell-style exit code (signal N -> 128 + N)."""
    if returncode < 0:
        return 128 - returncode
    return returncode


class Passthrough:
    def __init__(self, config: Config, registry: PluginRegistry) -> None:
        self.config = config
        self.registry = registry

    def resolve_binary(self, plugin_name: str) -> str:
        module = self.registry.load(plugin_name)
        binary_name = module.binary_name()
        path = active_binary(self.config.home_dir, binary_name)
        if path is None:
            raise NotFound(
                f"no active {binary_name} binary; provision a devnet or activate a cached build first"
            )
        return path

    def run(
        self,
        plugin_name: str,
        args: List[str],
        work_dir: Optional[str] = None,
        interactive: bool = False,
        env: Optional[Dict[str, str]] = None,
    ) -> int:
        """
        Execute the plugin's active binary with ``args`` and return its exit code.

        stdin/stdout/stderr are inherited. In interactive mode the parent
        ignores SIGINT while the child runs so Ctrl-C reaches only the child.
        """
        if not plugin_name:
            raise ValidationError("plugin name must not be empty")
        binary = self.resolve_binary(plugin_name)
        child_env = dict(os.environ)
        if env:
            child_env.update(env)
        if work_dir and not os.path.isdir(work_dir):
            raise NotFound(f"working directory does not exist: {work_dir}")

        logger.debug(f"Passthrough: {binary} {' '.join(args)}")
        previous = None
        if interactive:
            previous = signal.signal(signal.SIGINT, signal.SIG_IGN)
        try:
            try:
                proc = subprocess.Popen([binary] + list(args), cwd=work_dir, env=child_env)
            except OSError as e:
                raise IOFailure(f"failed to execute {binary}: {e}") from e
            returncode = proc.wait()
        finally:
            if interactive:
                signal.signal(signal.SIGINT, previous)
        return exit_code(returncode)
