"""Devnet lifecycle: provision -> run -> stop -> destroy.

    uninitialized --provision--> provisioned --run--> running --stop--> stopped
                                                         ^                 |
                                                         +------run--------+

``destroy`` is allowed from any state and is terminal. Every mutating
operation holds the file lock under ``<home>/.lock``.
"""

from __future__ import annotations

import logging
import os
import shutil
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from devnet import paths, state
from devnet.builder import SourceBuilder
from devnet.config import Config
from devnet.errors import (
    AlreadyExists,
    DevnetError,
    IOFailure,
    NotFound,
    ValidationError,
)
from devnet.fileio import write_json_atomic
from devnet.health import HealthChecker
from devnet.keys import ensure_node_keys
from devnet.lock import FileLock
from devnet.network import NetworkModule
from devnet.plugins import PluginRegistry
from devnet.runtime import KubernetesRuntime, LocalProcessRuntime, NodeRuntime
from devnet.state import (
    Devnet,
    DevnetStatus,
    ExecutionMode,
    FailedNode,
    Node,
    NodePorts,
    NodeStatus,
    RunResult,
    StopResult,
)

logger = logging.getLogger(__name__)

MIN_VALIDATORS = 1
MAX_VALIDATORS = 4
NETWORK_SOURCES = ("mainnet", "testnet")
STOP_POLL_INTERVAL_S = 0.1

BuilderFactory = Callable[[Config, NetworkModule], SourceBuilder]


@dataclass
class ProvisionOptions:
    plugin: str
    network_source: str = "mainnet"
    validators: int = 4
    execution_mode: Optional[ExecutionMode] = None
    chain_id: Optional[str] = None
    ref: Optional[str] = None
    binary_path: Optional[str] = None
    image: Optional[str] = None
    build_timeout: Optional[float] = None
    cancel: Optional[threading.Event] = None

    def validate(self) -> None:
        if not self.plugin:
            raise ValidationError("plugin must not be empty")
        if isinstance(self.validators, bool) or not isinstance(self.validators, int):
            raise ValidationError(f"validators must be an integer, got {self.validators!r}")
        if not MIN_VALIDATORS <= self.validators <= MAX_VALIDATORS:
            raise ValidationError(
                f"validators must be between {MIN_VALIDATORS} and {MAX_VALIDATORS}, got {self.validators}"
            )
        if self.network_source not in NETWORK_SOURCES:
            raise ValidationError(
                f"network_source must be one of {', '.join(NETWORK_SOURCES)}, got {self.network_source!r}"
            )
        if self.execution_mode is not None and not isinstance(self.execution_mode, ExecutionMode):
            try:
                self.execution_mode = ExecutionMode(self.execution_mode)
            except ValueError as e:
                raise ValidationError(f"invalid execution mode: {self.execution_mode!r}") from e


@dataclass
class RunOptions:
    health_timeout: Optional[float] = None
    cancel: Optional[threading.Event] = None


@dataclass
class _Collector:
    """Results written by per-node threads."""
    lock: threading.Lock = field(default_factory=threading.Lock)
    succeeded: List[int] = field(default_factory=list)
    stopped: List[int] = field(default_factory=list)
    killed: List[int] = field(default_factory=list)
    failed: List[FailedNode] = field(default_factory=list)

    def add(self, bucket: str, item) -> None:
        with self.lock:
            getattr(self, bucket).append(item)


def _mark_stopped(node: Node) -> None:
    if node.status == NodeStatus.RUNNING:
        node.status = NodeStatus.STOPPED
    node.handle = None


def _default_builder_factory(config: Config, module: NetworkModule) -> SourceBuilder:
    return SourceBuilder(config, module)


class DevnetOrchestrator:
    def __init__(
        self,
        config: Config,
        registry: PluginRegistry,
        builder_factory: Optional[BuilderFactory] = None,
        runtimes: Optional[Dict[ExecutionMode, NodeRuntime]] = None,
        health_checker: Optional[HealthChecker] = None,
    ) -> None:
        self.config = config
        self.registry = registry
        self.builder_factory = builder_factory or _default_builder_factory
        self.runtimes = runtimes or {
            ExecutionMode.LOCAL: LocalProcessRuntime(),
            ExecutionMode.CONTAINER: KubernetesRuntime(
                namespace=config.k8s_namespace,
                kubeconfig_path=config.kubeconfig_path,
            ),
        }
        self.health = health_checker or HealthChecker(
            host=config.health_host,
            path=config.health_path,
            request_timeout_s=config.health_request_timeout_s,
        )
        self.lock = FileLock(config.home_dir, timeout_s=config.lock_timeout_s)

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    def devnet_exists(self, home_dir: Optional[os.PathLike] = None) -> bool:
        return state.devnet_exists(home_dir or self.config.home_dir)

    def load_metadata(self, home_dir: Optional[os.PathLike] = None) -> Devnet:
        return state.load_metadata(home_dir or self.config.home_dir)

    def _runtime(self, mode: ExecutionMode) -> NodeRuntime:
        runtime = self.runtimes.get(mode)
        if runtime is None:
            raise ValidationError(f"no runtime configured for execution mode {mode.value}")
        return runtime

    def node_logs(self, index: int, lines: Optional[int] = None) -> str:
        devnet = self.load_metadata()
        node = next((n for n in devnet.nodes if n.index == index), None)
        if node is None:
            raise NotFound(f"node {index} does not exist")
        return self._runtime(devnet.execution_mode).log_tail(node, lines or self.config.log_tail_lines)

    # ------------------------------------------------------------------
    # provision
    # ------------------------------------------------------------------

    def provision(self, opts: ProvisionOptions) -> Devnet:
        """
        Create a devnet: resolve the binary, write node directories, keys and genesis.

        Validation happens before any side effect. If anything fails after the
        devnet directory was touched, the partial subtree is removed; if that
        removal fails too, the raised error has ``requires_cleanup`` set.

        Raises:
            ValidationError, AlreadyExists, NotFound, BuildFailure, PluginError,
            IOFailure, Timeout, Cancelled
        """
        opts.validate()
        home = self.config.home_dir

        with self.lock.held("provision"):
            if self.devnet_exists():
                raise AlreadyExists(f"a devnet already exists at {paths.devnet_dir(home)}")

            module = self.registry.load(opts.plugin)
            mode = opts.execution_mode or module.default_execution_mode()
            image = None
            if mode == ExecutionMode.CONTAINER:
                if not module.supports_docker():
                    raise ValidationError(f"plugin {opts.plugin} does not support container execution")
                image = opts.image or module.default_image()
                if not image:
                    raise ValidationError(f"container mode needs an image and {opts.plugin} has no default")
            self._runtime(mode)

            binary_path, commit_hash = self._resolve_binary(opts, module, mode)
            chain_id = opts.chain_id or module.default_chain_id()

            devnet_root = paths.devnet_dir(home)
            if devnet_root.exists():
                logger.warning(f"Removing leftover devnet directory without metadata: {devnet_root}")
                try:
                    shutil.rmtree(str(devnet_root))
                except OSError as e:
                    raise IOFailure(f"failed to remove leftover {devnet_root}: {e}", requires_cleanup=True) from e

            try:
                devnet = self._write_devnet(opts, module, mode, chain_id, image, binary_path, commit_hash)
            except DevnetError as e:
                self._cleanup_partial(e)
                raise
            except OSError as e:
                err = IOFailure(f"failed to provision devnet: {e}")
                self._cleanup_partial(err)
                raise err from e
            except Exception as e:
                err = DevnetError(f"failed to provision devnet: {e}")
                self._cleanup_partial(err)
                if err.requires_cleanup:
                    raise err from e
                raise

        logger.info(
            f"Provisioned devnet {devnet.chain_id} with {devnet.validators} validators "
            f"({devnet.execution_mode.value}, {devnet.network_source})"
        )
        return devnet

    def _resolve_binary(self, opts: ProvisionOptions, module: NetworkModule, mode: ExecutionMode):
        if opts.binary_path:
            path = os.path.abspath(os.path.expanduser(opts.binary_path))
            if not os.path.isfile(path) or not os.access(path, os.X_OK):
                raise NotFound(f"binary not found or not executable: {opts.binary_path}")
            return path, None
        if mode == ExecutionMode.CONTAINER:
            # the image carries the binary
            return module.binary_name(), None

        builder = self.builder_factory(self.config, module)
        ref = opts.ref or module.default_version()
        result = builder.build(ref, opts.network_source, timeout=opts.build_timeout, cancel=opts.cancel)
        builder.cache_for(opts.network_source).activate(result.commit_hash)
        return result.binary_path, result.commit_hash

    def _write_devnet(
        self,
        opts: ProvisionOptions,
        module: NetworkModule,
        mode: ExecutionMode,
        chain_id: str,
        image: Optional[str],
        binary_path: str,
        commit_hash: Optional[str],
    ) -> Devnet:
        home = self.config.home_dir
        devnet = Devnet(
            chain_id=chain_id,
            network_source=opts.network_source,
            plugin=opts.plugin,
            execution_mode=mode,
            validators=opts.validators,
            home_dir=str(home),
            binary_path=binary_path,
            commit_hash=commit_hash,
            image=image,
        )

        identities = []
        for i in range(opts.validators):
            node_home = paths.node_dir(home, i)
            for sub in ("config", "data"):
                (node_home / sub).mkdir(parents=True, exist_ok=True)
            ports = self.config.ports_for(i)
            node = Node(
                index=i,
                name=f"node{i}",
                home_dir=str(node_home),
                ports=NodePorts(
                    rpc=ports["rpc"],
                    p2p=ports["p2p"],
                    evm_rpc=ports.get("evm_rpc", 0),
                ),
            )
            devnet.nodes.append(node)
            identity = ensure_node_keys(node_home)
            identity.update({"index": i, "name": node.name, "ports": ports})
            identities.append(identity)

        genesis = module.generate_genesis({
            "chain_id": chain_id,
            "network_source": opts.network_source,
            "num_validators": opts.validators,
            "validators": identities,
        })
        for node in devnet.nodes:
            write_json_atomic(os.path.join(node.home_dir, "config", paths.GENESIS_FILE), genesis)

        devnet.status = DevnetStatus.PROVISIONED
        state.save_metadata(devnet)
        return devnet

    def _cleanup_partial(self, err: DevnetError) -> None:
        devnet_root = paths.devnet_dir(self.config.home_dir)
        try:
            if devnet_root.exists():
                shutil.rmtree(str(devnet_root))
        except OSError as e:
            logger.error(f"Failed to clean up partial devnet at {devnet_root}: {e}")
            err.requires_cleanup = True
            err.retryable = False

    # ------------------------------------------------------------------
    # run
    # ------------------------------------------------------------------

    def run(self, opts: Optional[RunOptions] = None) -> RunResult:
        """
        Start every node concurrently and wait for each to become healthy.

        Nodes that fail to start or never turn healthy are stopped and reported
        in ``failed_nodes`` with their log tail. The devnet is marked running
        when at least one node is healthy; otherwise its status is unchanged.
        """
        opts = opts or RunOptions()
        with self.lock.held("run"):
            devnet = self.load_metadata()
            if devnet.status not in (DevnetStatus.PROVISIONED, DevnetStatus.STOPPED):
                raise ValidationError(f"cannot run a devnet in status {devnet.status.value}")

            runtime = self._runtime(devnet.execution_mode)
            if devnet.execution_mode == ExecutionMode.LOCAL:
                binary = devnet.binary_path or ""
                if not os.path.isfile(binary) or not os.access(binary, os.X_OK):
                    raise NotFound(f"node binary not found or not executable: {devnet.binary_path}")

            module = self.registry.load(devnet.plugin)
            timeout = opts.health_timeout if opts.health_timeout is not None else self.config.health_timeout_s
            deadline = time.monotonic() + timeout
            collector = _Collector()

            commands: Dict[int, List[str]] = {}
            for node in devnet.nodes:
                ports = {"rpc": node.ports.rpc, "p2p": node.ports.p2p, "evm_rpc": node.ports.evm_rpc}
                commands[node.index] = module.start_command(node.home_dir, ports)

            threads = []
            for node in devnet.nodes:
                t = threading.Thread(
                    target=self._start_node,
                    args=(devnet, node, runtime, commands[node.index], deadline, opts.cancel, collector),
                    name=f"run-node{node.index}",
                    daemon=True,
                )
                t.start()
                threads.append(t)
            for t in threads:
                t.join()

            successful = sorted(collector.succeeded)
            failed = sorted(collector.failed, key=lambda f: f.index)
            if successful:
                devnet.status = DevnetStatus.RUNNING
            else:
                logger.error(f"No node of {devnet.chain_id} became healthy")
            state.save_metadata(devnet)

        if failed:
            logger.warning(f"{len(failed)} of {len(devnet.nodes)} nodes failed: {[f.index for f in failed]}")
        return RunResult(
            devnet=devnet,
            successful_nodes=successful,
            failed_nodes=failed,
            all_healthy=not failed and len(successful) == len(devnet.nodes),
        )

    def _start_node(
        self,
        devnet: Devnet,
        node: Node,
        runtime: NodeRuntime,
        args: List[str],
        deadline: float,
        cancel: Optional[threading.Event],
        collector: _Collector,
    ) -> None:
        try:
            node.handle = runtime.start(node, devnet.binary_path, args, devnet.chain_id, image=devnet.image)
            status = self.health.wait_for_healthy(
                node.ports.rpc,
                deadline,
                interval_s=self.config.health_interval_s,
                cancel=cancel,
                is_alive=lambda: runtime.is_alive(node),
            )
            if status.healthy:
                node.status = NodeStatus.RUNNING
                collector.add("succeeded", node.index)
                logger.info(f"Node {node.index} healthy on rpc port {node.ports.rpc}")
                return
            error = status.error or "unhealthy"
        except Exception as e:
            logger.error(f"Node {node.index} failed to start: {e}")
            error = str(e)

        log_tail = runtime.log_tail(node, self.config.log_tail_lines) if node.handle else ""
        self._force_stop(runtime, node, self.config.stop_timeout_s)
        node.status = NodeStatus.FAILED
        node.handle = None
        collector.add("failed", FailedNode(index=node.index, error=error, log_tail=log_tail))

    def _force_stop(self, runtime: NodeRuntime, node: Node, grace_s: float) -> None:
        if not node.handle:
            return
        try:
            runtime.signal_stop(node, grace_s)
            deadline = time.monotonic() + min(grace_s, 5.0)
            while runtime.is_alive(node) and time.monotonic() < deadline:
                time.sleep(STOP_POLL_INTERVAL_S)
            if runtime.is_alive(node):
                runtime.kill(node)
        except DevnetError as e:
            logger.warning(f"Could not stop failed node {node.index}: {e}")

    # ------------------------------------------------------------------
    # stop / destroy
    # ------------------------------------------------------------------

    def stop(self, timeout: Optional[float] = None, cancel: Optional[threading.Event] = None) -> StopResult:
        """
        Gracefully stop all nodes with one shared deadline.

        Nodes still alive at the deadline (or when ``cancel`` is set) are
        force-killed individually. Stopping an already stopped devnet is a no-op.
        """
        timeout = self.config.stop_timeout_s if timeout is None else timeout
        with self.lock.held("stop"):
            devnet = self.load_metadata()
            runtime = self._runtime(devnet.execution_mode)
            deadline = time.monotonic() + timeout
            collector = _Collector()

            threads = []
            for node in devnet.nodes:
                if not node.handle:
                    _mark_stopped(node)
                    continue
                t = threading.Thread(
                    target=self._stop_node,
                    args=(runtime, node, deadline, cancel, collector),
                    name=f"stop-node{node.index}",
                    daemon=True,
                )
                t.start()
                threads.append(t)
            for t in threads:
                t.join()

            if devnet.status == DevnetStatus.RUNNING:
                devnet.status = DevnetStatus.STOPPED
            state.save_metadata(devnet)

        result = StopResult(
            stopped_nodes=sorted(collector.stopped),
            killed_nodes=sorted(collector.killed),
            failed_nodes=sorted(collector.failed, key=lambda f: f.index),
        )
        if threads:
            logger.info(
                f"Stopped devnet {devnet.chain_id}: {len(result.stopped_nodes)} graceful, "
                f"{len(result.killed_nodes)} killed, {len(result.failed_nodes)} failed"
            )
        return result

    def _stop_node(
        self,
        runtime: NodeRuntime,
        node: Node,
        deadline: float,
        cancel: Optional[threading.Event],
        collector: _Collector,
    ) -> None:
        try:
            if not runtime.is_alive(node):
                _mark_stopped(node)
                return
            runtime.signal_stop(node, max(deadline - time.monotonic(), 0.0))
            while runtime.is_alive(node):
                if time.monotonic() >= deadline or (cancel is not None and cancel.is_set()):
                    logger.warning(f"Node {node.index} did not stop in time, killing")
                    runtime.kill(node)
                    collector.add("killed", node.index)
                    break
                time.sleep(STOP_POLL_INTERVAL_S)
            else:
                collector.add("stopped", node.index)
            node.status = NodeStatus.STOPPED
            node.handle = None
        except Exception as e:
            logger.error(f"Failed to stop node {node.index}: {e}")
            collector.add("failed", FailedNode(
                index=node.index,
                error=str(e),
                log_tail=runtime.log_tail(node, self.config.log_tail_lines),
            ))

    def destroy(self, timeout: Optional[float] = None) -> Devnet:
        """Stop whatever is running (best effort) and remove the devnet directory."""
        with self.lock.held("destroy"):
            devnet_root = paths.devnet_dir(self.config.home_dir)
            devnet = None
            try:
                devnet = self.load_metadata()
            except NotFound:
                if not devnet_root.exists():
                    raise
                logger.warning(f"Removing devnet directory without metadata: {devnet_root}")
            except IOFailure as e:
                # unreadable metadata: nothing to stop, only the tree to remove
                logger.error(f"Destroying devnet with unreadable metadata: {e}")

            if devnet is not None:
                try:
                    result = self.stop(timeout=timeout)
                    if result.failed_nodes:
                        logger.warning(f"Destroying with {len(result.failed_nodes)} nodes that failed to stop")
                except Exception as e:
                    logger.warning(f"Stop before destroy failed: {e}")
                else:
                    devnet = self.load_metadata()

            try:
                shutil.rmtree(str(devnet_root))
            except FileNotFoundError:
                pass
            except OSError as e:
                raise IOFailure(f"failed to remove {devnet_root}: {e}", requires_cleanup=True) from e

        if devnet is None:
            devnet = Devnet(
                chain_id="",
                network_source="",
                plugin="",
                execution_mode=ExecutionMode.LOCAL,
                validators=0,
                home_dir=str(self.config.home_dir),
            )
        devnet.status = DevnetStatus.DESTROYED
        devnet.touch()
        logger.info(f"Destroyed devnet {devnet.chain_id}")
        return devnet
