import io
import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

from conftest import FakeNetwork, posix_only, write_executable
from devnet.errors import NotFound, PluginError, ValidationError
from devnet.plugin_server import serve
from devnet.plugins import (
    MAGIC_COOKIE_KEY,
    MAGIC_COOKIE_VALUE,
    PluginRegistry,
    parse_handshake,
    parse_version,
)
from devnet.state import ExecutionMode

ROOT = str(Path(__file__).resolve().parents[1])

PLUGIN_SCRIPT = '''#!{python}
import sys
sys.path.insert(0, {root!r})

from devnet.network import BuildInstructions, NetworkModule
from devnet.plugin_server import serve


class Demo(NetworkModule):
    def name(self):
        return "demo"

    def version(self):
        return {version!r}

    def binary_name(self):
        return "demod"

    def build_instructions(self, network):
        return BuildInstructions(
            repo_url="https://github.com/example/demo.git",
            command=["make", "install"],
            env={{"NETWORK": network}},
            artifact_patterns=["build/demod"],
        )

    def generate_genesis(self, params):
        if params.get("chain_id") == "explode":
            raise ValueError("bad chain id")
        return {{"chain_id": params["chain_id"], "validators": len(params.get("validators", []))}}

    def supports_docker(self):
        return True


sys.exit(serve(Demo()))
'''


def _plugin(directory: Path, name: str = "demo", version: str = "1.3.0") -> Path:
    return write_executable(
        directory / f"{name}-plugin",
        PLUGIN_SCRIPT.format(python=sys.executable, root=ROOT, version=version),
    )


@pytest.fixture
def plugin_dir(tmp_path):
    d = tmp_path / "plugins"
    _plugin(d)
    return d


@pytest.fixture
def plugin_registry(plugin_dir):
    reg = PluginRegistry([plugin_dir])
    try:
        yield reg
    finally:
        reg.close()


def test_discover_finds_plugins_and_registered_modules(tmp_path, plugin_dir):
    (plugin_dir / "notes.txt").write_text("not a plugin")
    (plugin_dir / "stale-plugin").write_text("not executable")
    second = tmp_path / "more"
    _plugin(second, "demo")
    _plugin(second, "other")

    reg = PluginRegistry([plugin_dir, second, tmp_path / "missing"])
    reg.register(FakeNetwork())
    assert reg.discover() == ["demo", "fakechain", "other"]
    assert reg.find("demo") == plugin_dir / "demo-plugin"


@posix_only
def test_load_plugin_and_call(plugin_registry):
    module = plugin_registry.load("demo")
    assert module.name() == "demo"
    assert module.version() == "1.3.0"
    assert module.binary_name() == "demod"
    assert module.supports_docker() is True
    assert module.default_execution_mode() == ExecutionMode.LOCAL
    assert module.default_chain_id() == "demo-devnet-1"

    instructions = module.build_instructions("testnet")
    assert instructions.command == ["make", "install"]
    assert instructions.env == {"NETWORK": "testnet"}
    assert instructions.artifact_patterns == ["build/demod"]

    genesis = module.generate_genesis({"chain_id": "demo-1", "validators": [{}, {}]})
    assert genesis == {"chain_id": "demo-1", "validators": 2}

    args = module.start_command("/tmp/node0", {"rpc": 26657, "p2p": 26656})
    assert args[:3] == ["start", "--home", "/tmp/node0"]


@posix_only
def test_plugin_errors_are_reported(plugin_registry):
    module = plugin_registry.load("demo")
    with pytest.raises(PluginError) as excinfo:
        module.generate_genesis({"chain_id": "explode"})
    assert "bad chain id" in str(excinfo.value)
    # the plugin keeps serving after an error
    assert module.binary_name() == "demod"


@posix_only
def test_loaded_plugins_are_cached_and_closed(plugin_registry):
    first = plugin_registry.load("demo")
    assert plugin_registry.load("demo") is first
    plugin_registry.close()
    assert not first.alive()


@posix_only
def test_old_plugin_version_rejected(tmp_path):
    d = tmp_path / "old"
    _plugin(d, version="0.9.0")
    reg = PluginRegistry([d])
    with pytest.raises(PluginError) as excinfo:
        reg.load("demo")
    assert "1.0.0" in str(excinfo.value)
    reg.close()


@posix_only
def test_bad_handshake_rejected(tmp_path):
    write_executable(tmp_path / "p" / "broken-plugin", "#!/bin/sh\necho hello\nsleep 5\n")
    reg = PluginRegistry([tmp_path / "p"])
    with pytest.raises(PluginError):
        reg.load("broken")
    reg.close()


def test_missing_plugin(plugin_registry):
    with pytest.raises(NotFound):
        plugin_registry.load("nope")


@posix_only
def test_plugin_refuses_to_run_directly(plugin_dir):
    proc = subprocess.run([str(plugin_dir / "demo-plugin")], capture_output=True, text=True, timeout=30)
    assert proc.returncode == 1
    assert "not meant to be executed directly" in proc.stderr


def test_register_rejects_duplicates():
    reg = PluginRegistry([])
    reg.register(FakeNetwork())
    with pytest.raises(ValidationError):
        reg.register(FakeNetwork())
    assert isinstance(reg.load("fakechain"), FakeNetwork)


def test_serve_in_process():
    requests_in = "\n".join([
        json.dumps({"id": 1, "method": "binary_name", "params": {}}),
        json.dumps({"id": 2, "method": "no_such_method", "params": {}}),
        json.dumps({"id": 3, "method": "build_instructions", "params": {"network": "mainnet"}}),
    ]) + "\n"
    out = io.StringIO()
    code = serve(FakeNetwork(), stdin=io.StringIO(requests_in), stdout=out, env={MAGIC_COOKIE_KEY: MAGIC_COOKIE_VALUE})

    assert code == 0
    lines = out.getvalue().splitlines()
    assert parse_handshake(lines[0]) == 1
    responses = [json.loads(line) for line in lines[1:]]
    assert responses[0] == {"id": 1, "result": "fakechaind"}
    assert responses[1]["id"] == 2 and "unknown method" in responses[1]["error"]
    assert responses[2]["result"]["artifact_patterns"] == ["out/*"]


def test_serve_without_cookie():
    out = io.StringIO()
    assert serve(FakeNetwork(), stdin=io.StringIO(""), stdout=out, env={}) == 1
    assert out.getvalue() == ""


def test_version_and_handshake_parsing():
    assert parse_version("1.0.0") == (1, 0, 0)
    assert parse_version("v2.1") == (2, 1, 0)
    assert parse_version("1.4.2-rc1") == (1, 4, 2)
    with pytest.raises(ValueError):
        parse_version("one")
    with pytest.raises(ValueError):
        parse_handshake("2|1|stdio|json")
    with pytest.raises(ValueError):
        parse_handshake("1|1|grpc|protobuf")


VERSION_ERROR_PLUGIN = '''#!{python}
import json
import os
import os
import sys
with open({pid_file!r}, "w") as f:
    f.write(str(os.getpid()))
print("1|1|stdio|json", flush=True)
for line in sys.stdin:
    req = json.loads(line)
    print(json.dumps({{"id": req["id"], "error": "version unavailable"}}), flush=True)
'''


@posix_only
def test_failed_version_call_shuts_plugin_down(tmp_path):
    pid_file = tmp_path / "plugin.pid"
    write_executable(
        tmp_path / "p" / "noversion-plugin",
        VERSION_ERROR_PLUGIN.format(python=sys.executable, pid_file=str(pid_file)),
    )
    reg = PluginRegistry([tmp_path / "p"])
    with pytest.raises(PluginError) as excinfo:
        reg.load("noversion")
    assert "version unavailable" in str(excinfo.value)

    pid = int(pid_file.read_text())
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)
    reg.close()
