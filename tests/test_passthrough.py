import os
import signal

import pytest

from conftest import posix_only, write_executable
from devnet.cache import BinaryCache
from devnet.errors import NotFound
from devnet.passthrough import Passthrough, exit_code

COMMIT = "ab" * 20

ECHO_BINARY = '''#!/bin/sh
echo "args: $*" > "$OUT_FILE"
pwd >> "$OUT_FILE"
exit 7
'''


@pytest.fixture
def activated(config, tmp_path):
    artifact = write_executable(tmp_path / "artifact" / "fakechaind", ECHO_BINARY)
    cache = BinaryCache(config.home_dir, "fakechaind", "mainnet")
    cache.initialize()
    cache.store(artifact, COMMIT, "v1")
    cache.activate(COMMIT)
    return cache


@posix_only
def test_passthrough_returns_exit_code(config, registry, activated, tmp_path):
    out_file = tmp_path / "out.txt"
    work_dir = tmp_path / "work"
    work_dir.mkdir()

    code = Passthrough(config, registry).run(
        "fakechain",
        ["status", "--node", "tcp://localhost:26657"],
        work_dir=str(work_dir),
        env={"OUT_FILE": str(out_file)},
    )

    assert code == 7
    lines = out_file.read_text().splitlines()
    assert lines[0] == "args: status --node tcp://localhost:26657"
    assert os.path.realpath(lines[1]) == os.path.realpath(str(work_dir))


@posix_only
def test_passthrough_interactive_restores_sigint(config, registry, activated, tmp_path):
    before = signal.getsignal(signal.SIGINT)
    code = Passthrough(config, registry).run(
        "fakechain", [], interactive=True, env={"OUT_FILE": str(tmp_path / "o.txt")}
    )
    assert code == 7
    assert signal.getsignal(signal.SIGINT) == before


def test_passthrough_without_active_binary(config, registry):
    with pytest.raises(NotFound):
        Passthrough(config, registry).run("fakechain", ["version"])


def test_passthrough_unknown_plugin(config, registry):
    with pytest.raises(NotFound):
        Passthrough(config, registry).run("nochain", ["version"])


def test_exit_code_mapping():
    assert exit_code(0) == 0
    assert exit_code(3) == 3
    assert exit_code(-signal.SIGKILL) == 128 + signal.SIGKILL
    assert exit_code(-signal.SIGTERM) == 143
