import sys
import time
from unittest import mock

import pytest
from kubernetes.client.exceptions import ApiException

from conftest import posix_only, write_executable
from devnet.errors import IOFailure, NotFound
from devnet.runtime import KubernetesRuntime, LocalProcessRuntime
from devnet.state import Node, NodePorts
from k8s_executor.pod_gen import NODE_HOME_MOUNT, generate_pod_for_node, pod_name_for

SLEEPER = '''#!{python}
import signal
import sys
import time
if "--ignore-term" in sys.argv:
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
print("sleeper up", flush=True)
while True:
    time.sleep(0.1)
'''


def _node(tmp_path, index=0):
    return Node(index=index, name=f"node{index}", home_dir=str(tmp_path / f"node{index}"),
                ports=NodePorts(rpc=26657, p2p=26656, evm_rpc=8545))


@pytest.fixture
def sleeper(tmp_path):
    return str(write_executable(tmp_path / "sleeper", SLEEPER.format(python=sys.executable)))


def _wait_dead(runtime, node, timeout=5.0):
    deadline = time.monotonic() + timeout
    while runtime.is_alive(node) and time.monotonic() < deadline:
        time.sleep(0.05)
    return not runtime.is_alive(node)


@posix_only
def test_local_start_and_graceful_stop(tmp_path, sleeper):
    runtime = LocalProcessRuntime()
    node = _node(tmp_path)
    node.handle = runtime.start(node, sleeper, [], "fake-1")

    assert runtime.is_alive(node)
    assert (tmp_path / "node0" / "node.pid").read_text().strip() == node.handle
    deadline = time.monotonic() + 5
    while "sleeper up" not in runtime.log_tail(node) and time.monotonic() < deadline:
        time.sleep(0.05)
    assert "sleeper up" in runtime.log_tail(node)

    runtime.signal_stop(node, 5.0)
    assert _wait_dead(runtime, node)
    assert not (tmp_path / "node0" / "node.pid").exists()


@posix_only
def test_local_kill_unresponsive(tmp_path, sleeper):
    runtime = LocalProcessRuntime()
    node = _node(tmp_path)
    node.handle = runtime.start(node, sleeper, ["--ignore-term"], "fake-1")
    time.sleep(0.5)

    runtime.signal_stop(node, 1.0)
    time.sleep(0.5)
    assert runtime.is_alive(node)

    runtime.kill(node)
    assert _wait_dead(runtime, node, timeout=2.0)


def test_local_start_missing_binary(tmp_path):
    with pytest.raises(NotFound):
        LocalProcessRuntime().start(_node(tmp_path), str(tmp_path / "missing"), [], "fake-1")


def test_local_without_handle_is_not_alive(tmp_path):
    runtime = LocalProcessRuntime()
    node = _node(tmp_path)
    assert not runtime.is_alive(node)
    runtime.signal_stop(node, 1.0)
    assert runtime.log_tail(node) == ""


def test_pod_generation():
    pod = generate_pod_for_node(
        chain_id="Fake_Chain-1",
        index=2,
        image="example/fakechaind:v1",
        command=["fakechaind", "start", "--home", "/home/u/.devnet/node2"],
        host_home_dir="/home/u/.devnet/node2",
        ports={"rpc": 46657, "p2p": 46656, "evm_rpc": 28545},
        namespace="devnet-test",
    )
    assert pod.metadata.name == "fake-chain-1-node2" == pod_name_for("Fake_Chain-1", 2)
    assert pod.metadata.namespace == "devnet-test"
    assert pod.metadata.labels["devnet.node_index"] == "2"
    assert pod.spec.host_network is True
    assert pod.spec.restart_policy == "Never"
    container = pod.spec.containers[0]
    assert container.command == ["fakechaind", "start", "--home", NODE_HOME_MOUNT]
    assert {p.container_port for p in container.ports} == {46657, 46656, 28545}
    assert pod.spec.volumes[0].host_path.path == "/home/u/.devnet/node2"


@pytest.fixture
def core_api():
    return mock.MagicMock()


def test_k8s_start_creates_pod(tmp_path, core_api):
    runtime = KubernetesRuntime(namespace="devnet-test", core_api=core_api)
    node = _node(tmp_path, 1)
    handle = runtime.start(node, "fakechaind", ["start"], "fake-1", image="example/fakechaind:v1")

    assert handle == "fake-1-node1"
    kwargs = core_api.create_namespaced_pod.call_args.kwargs
    assert kwargs["namespace"] == "devnet-test"
    assert kwargs["body"].spec.containers[0].image == "example/fakechaind:v1"


def test_k8s_start_replaces_leftover_pod(tmp_path, core_api):
    core_api.create_namespaced_pod.side_effect = [ApiException(status=409, reason="AlreadyExists"), mock.MagicMock()]
    runtime = KubernetesRuntime(core_api=core_api)
    runtime.start(_node(tmp_path), "fakechaind", [], "fake-1", image="img")
    core_api.delete_namespaced_pod.assert_called_once()
    assert core_api.create_namespaced_pod.call_count == 2


def test_k8s_start_failure(tmp_path, core_api):
    core_api.create_namespaced_pod.side_effect = ApiException(status=403, reason="Forbidden")
    runtime = KubernetesRuntime(core_api=core_api)
    with pytest.raises(IOFailure):
        runtime.start(_node(tmp_path), "fakechaind", [], "fake-1", image="img")


def test_k8s_start_requires_image(tmp_path, core_api):
    with pytest.raises(NotFound):
        KubernetesRuntime(core_api=core_api).start(_node(tmp_path), "fakechaind", [], "fake-1")


def test_k8s_stop_and_kill_use_grace_periods(tmp_path, core_api):
    runtime = KubernetesRuntime(namespace="ns", core_api=core_api)
    node = _node(tmp_path)
    node.handle = "fake-1-node0"

    runtime.signal_stop(node, 10.0)
    core_api.delete_namespaced_pod.assert_called_with(name="fake-1-node0", namespace="ns", grace_period_seconds=10)
    runtime.kill(node)
    core_api.delete_namespaced_pod.assert_called_with(name="fake-1-node0", namespace="ns", grace_period_seconds=0)

    core_api.delete_namespaced_pod.side_effect = ApiException(status=404, reason="NotFound")
    runtime.kill(node)


def test_k8s_is_alive(tmp_path, core_api):
    runtime = KubernetesRuntime(core_api=core_api)
    node = _node(tmp_path)
    node.handle = "fake-1-node0"

    pod = mock.MagicMock()
    pod.metadata.deletion_timestamp = None
    pod.status.phase = "Running"
    core_api.read_namespaced_pod.return_value = pod
    assert runtime.is_alive(node)

    pod.status.phase = "Succeeded"
    assert not runtime.is_alive(node)

    core_api.read_namespaced_pod.side_effect = ApiException(status=404, reason="NotFound")
    assert not runtime.is_alive(node)


def test_k8s_log_tail(tmp_path, core_api):
    runtime = KubernetesRuntime(core_api=core_api)
    node = _node(tmp_path)
    node.handle = "fake-1-node0"
    core_api.read_namespaced_pod_log.return_value = "line1\nline2\n"
    assert runtime.log_tail(node, 2) == "line1\nline2\n"
    core_api.read_namespaced_pod_log.assert_called_with(name="fake-1-node0", namespace="devnet", tail_lines=2)


def test_k8s_is_alive_api_error_is_io_failure(tmp_path, core_api):
    runtime = KubernetesRuntime(core_api=core_api)
    node = _node(tmp_path)
    node.handle = "fake-1-node0"
    core_api.read_namespaced_pod.side_effect = ApiException(status=500, reason="Internal")
    with pytest.raises(IOFailure):
        runtime.is_alive(node)
