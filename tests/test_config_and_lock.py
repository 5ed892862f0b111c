import json
import os
import threading
import time

import pytest

from devnet.config import Config, load_config
from devnet.errors import Timeout, ValidationError
from devnet.lock import FileLock
from devnet.state import Devnet, DevnetStatus, ExecutionMode, Node, NodePorts


def test_load_config_from_yaml_and_env(tmp_path):
    path = tmp_path / "devnet.yaml"
    path.write_text(
        "home_dir: {}\n"
        "health_timeout_s: 42\n"
        "base_ports:\n"
        "  rpc: 36657\n"
        "  p2p: 36656\n"
        "unknown_key: 1\n".format(tmp_path / "home"),
        encoding="utf-8",
    )
    config = load_config(str(path), env={"DEVNET_STOP_TIMEOUT_S": "3.5", "DEVNET_HEALTH_HOST": "10.1.1.1"})

    assert config.home_dir == tmp_path / "home"
    assert config.health_timeout_s == 42.0
    assert config.stop_timeout_s == 3.5
    assert config.health_host == "10.1.1.1"
    assert config.ports_for(2) == {"rpc": 56657, "p2p": 56656}


def test_config_defaults(tmp_path):
    config = Config(home_dir=tmp_path)
    assert config.ports_for(0) == {"rpc": 26657, "p2p": 26656, "evm_rpc": 8545}
    assert config.ports_for(1)["rpc"] == 36657
    assert config.plugin_dirs[1] == tmp_path / "plugins"


def test_load_config_errors(tmp_path):
    with pytest.raises(ValidationError):
        load_config(str(tmp_path / "missing.yaml"), env={})
    bad = tmp_path / "bad.yaml"
    bad.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ValidationError):
        load_config(str(bad), env={})
    with pytest.raises(ValidationError):
        load_config(None, env={"DEVNET_LOG_TAIL_LINES": "many"})


def test_plugin_dirs_from_env(tmp_path):
    config = load_config(None, env={"DEVNET_PLUGIN_DIRS": os.pathsep.join(["/a", "/b"])})
    assert [str(p) for p in config.plugin_dirs] == ["/a", "/b"]


def test_lock_is_exclusive_across_instances(tmp_path):
    first = FileLock(tmp_path, timeout_s=0.3)
    second = FileLock(tmp_path, timeout_s=0.3)

    with first.held("provision"):
        holder = json.loads((tmp_path / ".lock" / "lock.json").read_text())
        assert holder["pid"] == os.getpid()
        assert holder["purpose"] == "provision"
        with pytest.raises(Timeout):
            second.acquire("run")
    assert not (tmp_path / ".lock" / "lock.json").exists()

    with second.held("run"):
        pass


def test_lock_is_reentrant(tmp_path):
    lock = FileLock(tmp_path, timeout_s=0.3)
    with lock.held("destroy"):
        with lock.held("stop"):
            assert (tmp_path / ".lock" / "lock.json").exists()
        assert (tmp_path / ".lock" / "lock.json").exists()
    assert not (tmp_path / ".lock" / "lock.json").exists()


def test_stale_lock_is_reclaimed(tmp_path):
    import socket

    lock_file = tmp_path / ".lock" / "lock.json"
    lock_file.parent.mkdir(parents=True)
    # pid far above any real pid_max
    lock_file.write_text(json.dumps({
        "pid": 2 ** 30, "hostname": socket.gethostname(), "purpose": "run", "acquired_at": time.time(),
    }))
    lock = FileLock(tmp_path, timeout_s=2.0)
    with lock.held("provision"):
        assert json.loads(lock_file.read_text())["pid"] == os.getpid()


def test_lock_waits_for_release(tmp_path):
    holder = FileLock(tmp_path, timeout_s=1.0)
    waiter = FileLock(tmp_path, timeout_s=5.0)
    acquired = threading.Event()

    def hold():
        with holder.held("run"):
            acquired.set()
            time.sleep(0.3)

    t = threading.Thread(target=hold)
    t.start()
    assert acquired.wait(5)
    start = time.monotonic()
    waiter.acquire("stop")
    waiter.release()
    t.join()
    assert time.monotonic() - start >= 0.2


def test_metadata_ignores_unknown_keys():
    devnet = Devnet(
        chain_id="fake-1",
        network_source="mainnet",
        plugin="fakechain",
        execution_mode=ExecutionMode.LOCAL,
        validators=1,
        home_dir="/tmp/h",
        nodes=[Node(index=0, name="node0", home_dir="/tmp/h/devnet/node0", ports=NodePorts(rpc=1, p2p=2))],
    )
    data = devnet.to_dict()
    data["future_field"] = {"x": 1}
    data["nodes"][0]["future_node_field"] = True
    del data["image"]

    loaded = Devnet.from_dict(data)
    assert loaded.chain_id == "fake-1"
    assert loaded.status == DevnetStatus.UNINITIALIZED
    assert loaded.nodes[0].ports.evm_rpc == 0
    assert loaded.image is None
