"""Discovery and loading of network plugins.

A plugin is an executable named ``<network>-plugin`` in one of the configured
plugin directories. The core starts it with a magic-cookie environment variable
and speaks a line-oriented JSON protocol over its stdin/stdout:

    plugin -> core   1|<app version>|stdio|json           (handshake, first line)
    core -> plugin   {"id": 1, "method": "binary_name", "params": {}}
    plugin -> core   {"id": 1, "result": "stabled"}
    plugin -> core   {"id": 2, "error": "unknown network"}

Python plugins implement ``NetworkModule`` and call ``devnet.plugin_server.serve``.
"""

from __future__ import annotations

import itertools
import json
import logging
import os
import queue
import subprocess
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from devnet.errors import NotFound, PluginError, ValidationError
from devnet.network import BuildInstructions, NetworkModule
from devnet.state import ExecutionMode

logger = logging.getLogger(__name__)

PLUGIN_SUFFIX = "-plugin"
MAGIC_COOKIE_KEY = "DEVNET_PLUGIN_MAGIC_COOKIE"
MAGIC_COOKIE_VALUE = "a3f1c9e2-devnet-builder-network-module"
CORE_PROTOCOL_VERSION = 1
SUPPORTED_APP_VERSIONS = (1, 1)
MIN_PLUGIN_VERSION = (1, 0, 0)

HANDSHAKE_TIMEOUT_S = 10.0
CALL_TIMEOUT_S = 30.0


def parse_version(text: str) -> Tuple[int, int, int]:
    """Parse "1.2.3", "v1.2" or "1.2.3-rc1" into a comparable tuple."""
    core = str(text).strip().lstrip("vV").split("-", 1)[0].split("+", 1)[0]
    parts = core.split(".")
    if not parts or len(parts) > 3:
        raise ValueError(f"invalid version: {text!r}")
    nums = [int(p) for p in parts]
    while len(nums) < 3:
        nums.append(0)
    return nums[0], nums[1], nums[2]


def parse_handshake(line: str) -> int:
    """Validate the handshake line and return the negotiated app protocol version."""
    parts = line.strip().split("|")
    if len(parts) != 4:
        raise ValueError(f"malformed handshake: {line.strip()!r}")
    core, app, transport, encoding = parts
    if int(core) != CORE_PROTOCOL_VERSION:
        raise ValueError(f"unsupported core protocol version {core}")
    app_version = int(app)
    if not SUPPORTED_APP_VERSIONS[0] <= app_version <= SUPPORTED_APP_VERSIONS[1]:
        raise ValueError(f"unsupported app protocol version {app}")
    if transport != "stdio" or encoding != "json":
        raise ValueError(f"unsupported transport {transport}/{encoding}")
    return app_version


class PluginProcess(NetworkModule):
    """NetworkModule backed by a running plugin executable."""

    def __init__(self, name: str, path: Path, call_timeout_s: float = CALL_TIMEOUT_S) -> None:
        self._plugin = name
        self.path = path
        self.call_timeout_s = call_timeout_s
        self._ids = itertools.count(1)
        self._call_lock = threading.Lock()
        self._lines: "queue.Queue[Optional[str]]" = queue.Queue()
        self._proc: Optional[subprocess.Popen] = None
        self._cached: Dict[str, Any] = {}

    # ------------------------------------------------------------------
    # process lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        env = dict(os.environ)
        env[MAGIC_COOKIE_KEY] = MAGIC_COOKIE_VALUE
        try:
            self._proc = subprocess.Popen(
                [str(self.path)],
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                env=env,
                text=True,
                bufsize=1,
            )
        except OSError as e:
            raise PluginError(self._plugin, "start", str(e)) from e

        reader = threading.Thread(target=self._read_stdout, name=f"plugin-{self._plugin}", daemon=True)
        reader.start()

        line = self._next_line(HANDSHAKE_TIMEOUT_S, "handshake")
        try:
            app_version = parse_handshake(line)
        except ValueError as e:
            self.close()
            raise PluginError(self._plugin, "handshake", str(e)) from e

        try:
            version = self.version()
        except PluginError:
            self.close()
            raise
        try:
            if parse_version(version) < MIN_PLUGIN_VERSION:
                raise ValueError(f"version {version} is older than the minimum 1.0.0")
        except ValueError as e:
            self.close()
            raise PluginError(self._plugin, "version", str(e)) from e
        logger.info(f"Loaded plugin {self._plugin} v{version} (protocol {app_version}) from {self.path}")

    def _read_stdout(self) -> None:
        for line in self._proc.stdout:
            self._lines.put(line)
        self._lines.put(None)

    def _next_line(self, timeout: float, op: str) -> str:
        try:
            line = self._lines.get(timeout=timeout)
        except queue.Empty:
            self.close()
            raise PluginError(self._plugin, op, f"no response within {timeout:.0f}s")
        if line is None:
            code = self._proc.poll() if self._proc else None
            raise PluginError(self._plugin, op, f"plugin exited (code {code})")
        return line

    def alive(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    def close(self) -> None:
        proc, self._proc = self._proc, None
        if proc is None:
            return
        try:
            if proc.poll() is None and proc.stdin:
                proc.stdin.close()
            proc.wait(timeout=2)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()
        except OSError:
            proc.kill()
        logger.debug(f"Plugin {self._plugin} shut down")

    # ------------------------------------------------------------------
    # calls
    # ------------------------------------------------------------------

    def call(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        with self._call_lock:
            if not self.alive():
                raise PluginError(self._plugin, method, "plugin process is not running")
            req_id = next(self._ids)
            try:
                self._proc.stdin.write(json.dumps({"id": req_id, "method": method, "params": params or {}}) + "\n")
                self._proc.stdin.flush()
            except (BrokenPipeError, OSError) as e:
                raise PluginError(self._plugin, method, f"write failed: {e}") from e

            line = self._next_line(self.call_timeout_s, method)
            try:
                response = json.loads(line)
            except ValueError as e:
                raise PluginError(self._plugin, method, f"invalid response: {line.strip()[:200]}") from e
            if response.get("id") != req_id:
                raise PluginError(self._plugin, method, f"response id {response.get('id')} != {req_id}")
            if "error" in response and response["error"] is not None:
                raise PluginError(self._plugin, method, str(response["error"]))
            return response.get("result")

    def _cached_call(self, method: str) -> Any:
        if method not in self._cached:
            self._cached[method] = self.call(method)
        return self._cached[method]

    def name(self) -> str:
        return self._cached_call("name")

    def version(self) -> str:
        return self._cached_call("version")

    def binary_name(self) -> str:
        return self._cached_call("binary_name")

    def build_instructions(self, network: str) -> BuildInstructions:
        data = self.call("build_instructions", {"network": network})
        try:
            return BuildInstructions.from_dict(data)
        except (KeyError, TypeError) as e:
            raise PluginError(self._plugin, "build_instructions", f"malformed result: {e}") from e

    def generate_genesis(self, params: Dict[str, Any]) -> Dict[str, Any]:
        genesis = self.call("generate_genesis", params)
        if not isinstance(genesis, dict):
            raise PluginError(self._plugin, "generate_genesis", "result is not a JSON object")
        return genesis

    def supports_docker(self) -> bool:
        return bool(self._cached_call("supports_docker"))

    def default_execution_mode(self) -> ExecutionMode:
        return ExecutionMode(self._cached_call("default_execution_mode"))

    def default_chain_id(self) -> str:
        return self._cached_call("default_chain_id")

    def default_version(self) -> str:
        return self._cached_call("default_version")

    def default_image(self) -> Optional[str]:
        return self._cached_call("default_image")

    def start_command(self, home_dir: str, ports: Dict[str, int]) -> List[str]:
        return list(self.call("start_command", {"home_dir": home_dir, "ports": ports}))


class PluginRegistry:
    def __init__(self, plugin_dirs: List[os.PathLike], call_timeout_s: float = CALL_TIMEOUT_S) -> None:
        self.plugin_dirs = [Path(d) for d in plugin_dirs]
        self.call_timeout_s = call_timeout_s
        self._registered: Dict[str, NetworkModule] = {}
        self._loaded: Dict[str, PluginProcess] = {}
        self._lock = threading.Lock()

    def register(self, module: NetworkModule) -> None:
        """Register an in-process module. It takes precedence over plugin executables."""
        name = module.name()
        with self._lock:
            if name in self._registered:
                raise ValidationError(f"network module {name} is already registered")
            self._registered[name] = module

    def find(self, name: str) -> Optional[Path]:
        for directory in self.plugin_dirs:
            candidate = directory / f"{name}{PLUGIN_SUFFIX}"
            if candidate.is_file() and os.access(str(candidate), os.X_OK):
                return candidate
        return None

    def discover(self) -> List[str]:
        """Names of all available networks. First directory wins on duplicates."""
        found: Dict[str, Path] = {}
        for directory in self.plugin_dirs:
            if not directory.is_dir():
                continue
            for entry in sorted(directory.iterdir()):
                if not entry.name.endswith(PLUGIN_SUFFIX):
                    continue
                if not entry.is_file() or not os.access(str(entry), os.X_OK):
                    continue
                name = entry.name[: -len(PLUGIN_SUFFIX)]
                if name and name not in found:
                    found[name] = entry
        return sorted(set(found) | set(self._registered))

    def load(self, name: str) -> NetworkModule:
        with self._lock:
            if name in self._registered:
                return self._registered[name]
            handle = self._loaded.get(name)
            if handle is not None and handle.alive():
                return handle

            path = self.find(name)
            if path is None:
                dirs = ", ".join(str(d) for d in self.plugin_dirs)
                raise NotFound(f"plugin {name} not found in {dirs}")
            handle = PluginProcess(name, path, call_timeout_s=self.call_timeout_s)
            handle.start()
            self._loaded[name] = handle
            return handle

    def close(self) -> None:
        with self._lock:
            loaded, self._loaded = self._loaded, {}
        for name, handle in loaded.items():
            try:
                handle.close()
            except OSError as e:
                logger.warning(f"Failed to close plugin {name}: {e}")
