import os
import random
import socket
import stat
import sys
from pathlib import Path
from typing import Any, Dict, List

sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest

from devnet.config import Config
from devnet.network import BuildInstructions, NetworkModule
from devnet.plugins import PluginRegistry
from devnet.state import ExecutionMode


FAKE_NODE_SCRIPT = '''#!{python}
import json
import os
import signal
import sys
from http.server import BaseHTTPRequestHandler, HTTPServer

args = sys.argv[1:]
port = int(args[args.index("--port") + 1])
home = args[args.index("--home") + 1]

if os.path.exists(os.path.join(home, "crash")):
    print("boom: node crashed on purpose", flush=True)
    sys.exit(3)
if os.path.exists(os.path.join(home, "ignore_term")):
    signal.signal(signal.SIGTERM, signal.SIG_IGN)


class Handler(BaseHTTPRequestHandler):
    def do_GET(self):
        body = json.dumps({{"result": {{"node_info": {{"network": "fakechain"}}}}}}).encode()
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, *args):
        pass


print("node listening on", port, flush=True)
HTTPServer(("127.0.0.1", port), Handler).serve_forever()
'''


def write_executable(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def free_port_block(count: int) -> int:
    """Base port such that base .. base+count-1 are all bindable on localhost."""
    for _ in range(200):
        base = random.randint(20000, 40000)
        sockets = []
        try:
            for offset in range(count):
                s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
                sockets.append(s)
                s.bind(("127.0.0.1", base + offset))
            return base
        except OSError:
            continue
        finally:
            for s in sockets:
                s.close()
    raise RuntimeError("no free port block found")


class FakeNetwork(NetworkModule):
    """In-process network module whose node binary is a tiny HTTP status server."""

    def __init__(self, name: str = "fakechain", repo_url: str = "", genesis_error: Exception = None) -> None:
        self._name = name
        self.repo_url = repo_url
        self.genesis_error = genesis_error
        self.genesis_calls: List[Dict[str, Any]] = []

    def name(self) -> str:
        return self._name

    def version(self) -> str:
        return "1.2.0"

    def binary_name(self) -> str:
        return "fakechaind"

    def build_instructions(self, network: str) -> BuildInstructions:
        return BuildInstructions(
            repo_url=self.repo_url,
            command=[sys.executable, "build.py", network],
            env={"FAKE_NETWORK": network},
            artifact_patterns=["out/*"],
            tool=sys.executable,
        )

    def generate_genesis(self, params: Dict[str, Any]) -> Dict[str, Any]:
        self.genesis_calls.append(params)
        if self.genesis_error is not None:
            raise self.genesis_error
        return {
            "chain_id": params["chain_id"],
            "validators": [{"address": v["address"], "power": "1"} for v in params["validators"]],
        }

    def supports_docker(self) -> bool:
        return True

    def default_execution_mode(self) -> ExecutionMode:
        return ExecutionMode.LOCAL

    def default_image(self):
        return "ghcr.io/example/fakechaind:latest"

    def start_command(self, home_dir: str, ports: Dict[str, int]) -> List[str]:
        return ["--port", str(ports["rpc"]), "--home", home_dir]


@pytest.fixture
def home_dir(tmp_path):
    return tmp_path / "home"


@pytest.fixture
def config(home_dir, tmp_path):
    base = free_port_block(4)
    return Config(
        home_dir=home_dir,
        plugin_dirs=[tmp_path / "plugins"],
        health_timeout_s=15.0,
        health_interval_s=0.1,
        health_request_timeout_s=1.0,
        stop_timeout_s=5.0,
        lock_timeout_s=5.0,
        base_ports={"rpc": base, "p2p": base + 5000, "evm_rpc": base + 10000},
        port_offset=1,
    )


@pytest.fixture
def fake_network():
    return FakeNetwork()


@pytest.fixture
def registry(config, fake_network):
    reg = PluginRegistry(config.plugin_dirs)
    reg.register(fake_network)
    try:
        yield reg
    finally:
        reg.close()


@pytest.fixture
def node_binary(tmp_path):
    return write_executable(tmp_path / "bin" / "fakechaind", FAKE_NODE_SCRIPT.format(python=sys.executable))


posix_only = pytest.mark.skipif(os.name != "posix", reason="requires POSIX signals and symlinks")
