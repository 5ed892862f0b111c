"""Launchers for node processes: local OS processes and Kubernetes pods."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

from kubernetes import client, config
from kubernetes.client.exceptions import ApiException

from devnet.errors import IOFailure, NotFound
from devnet.fileio import tail_lines
from devnet.state import Node
from k8s_executor.pod_gen import generate_pod_for_node

logger = logging.getLogger(__name__)

NODE_LOG = "node.log"
PID_FILE = "node.pid"


class NodeRuntime(ABC):
	@abstractmethod
	def start(self, node: Node, binary: str, args: List[str], chain_id: str, image: Optional[str] = None) -> str:
		"""Start the node and return its handle (pid or pod name)."""
		raise NotImplementedError

	@abstractmethod
	def signal_stop(self, node: Node, grace_s: float) -> None:
		raise NotImplementedError

	@abstractmethod
	def kill(self, node: Node) -> None:
		raise NotImplementedError

	@abstractmethod
	def is_alive(self, node: Node) -> bool:
		raise NotImplementedError

	@abstractmethod
	def log_tail(self, node: Node, lines: int = 50) -> str:
		raise NotImplementedError


class LocalProcessRuntime(NodeRuntime):
	"""Nodes as child processes in their own session, output to ``<node home>/node.log``."""

	def __init__(self) -> None:
		self._procs: Dict[int, subprocess.Popen] = {}
		self._lock = threading.Lock()

	def start(self, node: Node, binary: str, args: List[str], chain_id: str, image: Optional[str] = None) -> str:
		if not os.path.isfile(binary) or not os.access(binary, os.X_OK):
			raise NotFound(f"node binary not found or not executable: {binary}")
		home = Path(node.home_dir)
		log_path = home / NODE_LOG
		node.log_path = str(log_path)
		try:
			home.mkdir(parents=True, exist_ok=True)
			with open(log_path, "a", encoding="utf-8") as log_file:
				proc = subprocess.Popen(
					[binary] + list(args),
					cwd=str(home),
					stdin=subprocess.DEVNULL,
					stdout=log_file,
					stderr=subprocess.STDOUT,
					start_new_session=True,
				)
			(home / PID_FILE).write_text(f"{proc.pid}\n", encoding="utf-8")
		except OSError as e:
			raise IOFailure(f"failed to start node {node.index}: {e}") from e

		with self._lock:
			self._procs[proc.pid] = proc
		logger.info(f"Started node {node.index} (pid {proc.pid}) for {chain_id}")
		return str(proc.pid)

	def _pid(self, node: Node) -> Optional[int]:
		if node.handle:
			try:
				return int(node.handle)
			except ValueError:
				return None
		try:
			return int((Path(node.home_dir) / PID_FILE).read_text().strip())
		except (OSError, ValueError):
			return None

	def _signal(self, node: Node, sig: int) -> None:
		pid = self._pid(node)
		if pid is None:
			return
		try:
			os.kill(pid, sig)
		except ProcessLookupError:
			pass
		except PermissionError as e:
			raise IOFailure(f"not allowed to signal node {node.index} (pid {pid}): {e}") from e

	def signal_stop(self, node: Node, grace_s: float) -> None:
		self._signal(node, signal.SIGTERM)

	def kill(self, node: Node) -> None:
		self._signal(node, signal.SIGKILL)
		pid = self._pid(node)
		with self._lock:
			proc = self._procs.get(pid) if pid is not None else None
		if proc is not None:
			try:
				proc.wait(timeout=5)
			except subprocess.TimeoutExpired:
				logger.warning(f"Node {node.index} (pid {pid}) still running after SIGKILL")

	def is_alive(self, node: Node) -> bool:
		pid = self._pid(node)
		if pid is None:
			return False
		with self._lock:
			proc = self._procs.get(pid)
		if proc is not None:
			if proc.poll() is None:
				return True
			with self._lock:
				self._procs.pop(pid, None)
			self._clear_pid_file(node)
			return False
		try:
			os.kill(pid, 0)
		except ProcessLookupError:
			self._clear_pid_file(node)
			return False
		except PermissionError:
			return True
		return True

	def _clear_pid_file(self, node: Node) -> None:
		try:
			(Path(node.home_dir) / PID_FILE).unlink()
		except FileNotFoundError:
			pass

	def log_tail(self, node: Node, lines: int = 50) -> str:
		return tail_lines(node.log_path or os.path.join(node.home_dir, NODE_LOG), lines)


class KubernetesRuntime(NodeRuntime):
	"""Nodes as host-network pods with the node home mounted from the host."""

	def __init__(self, namespace: str = "devnet", core_api=None, kubeconfig_path: Optional[str] = None) -> None:
		self.namespace = namespace
		self.kubeconfig_path = kubeconfig_path
		self._core = core_api

	@property
	def core(self):
		if self._core is None:
			try:
				config.load_incluster_config()
				logger.info("Loaded in-cluster Kubernetes config")
			except config.ConfigException:
				config.load_kube_config(config_file=self.kubeconfig_path)
				logger.info("Loaded kubeconfig")
			self._core = client.CoreV1Api()
		return self._core

	def start(self, node: Node, binary: str, args: List[str], chain_id: str, image: Optional[str] = None) -> str:
		if not image:
			raise NotFound(f"no container image configured for node {node.index}")
		pod = generate_pod_for_node(
			chain_id=chain_id,
			index=node.index,
			image=image,
			command=[binary] + list(args),
			host_home_dir=node.home_dir,
			ports={"rpc": node.ports.rpc, "p2p": node.ports.p2p, "evm_rpc": node.ports.evm_rpc},
			namespace=self.namespace,
		)
		name = pod.metadata.name
		try:
			self.core.create_namespaced_pod(namespace=self.namespace, body=pod)
		except ApiException as e:
			if e.status != 409:
				logger.error(f"Failed to create pod {name}: status={e.status}, reason={e.reason}")
				raise IOFailure(f"failed to create pod {name}: {e.reason}") from e
			# leftover from a previous run
			logger.info(f"Pod {name} already exists, replacing it")
			self._delete(name, 0)
			try:
				self.core.create_namespaced_pod(namespace=self.namespace, body=pod)
			except ApiException as e2:
				raise IOFailure(f"failed to recreate pod {name}: {e2.reason}") from e2
		node.log_path = None
		logger.info(f"Created pod {name} for node {node.index}")
		return name

	def _delete(self, name: str, grace_s: int) -> None:
		try:
			self.core.delete_namespaced_pod(name=name, namespace=self.namespace, grace_period_seconds=grace_s)
		except ApiException as e:
			if e.status == 404:
				return
			logger.error(f"Failed to delete pod {name}: {e}")
			raise IOFailure(f"failed to delete pod {name}: {e.reason}") from e

	def signal_stop(self, node: Node, grace_s: float) -> None:
		if node.handle:
			self._delete(node.handle, max(int(grace_s), 1))

	def kill(self, node: Node) -> None:
		if node.handle:
			self._delete(node.handle, 0)

	def is_alive(self, node: Node) -> bool:
		if not node.handle:
			return False
		try:
			pod = self.core.read_namespaced_pod(name=node.handle, namespace=self.namespace)
		except ApiException as e:
			if e.status == 404:
				return False
			logger.error(f"Failed to read pod {node.handle}: status={e.status}, reason={e.reason}")
			raise IOFailure(f"failed to read pod {node.handle}: {e.reason}") from e
		if pod.metadata is not None and pod.metadata.deletion_timestamp is not None:
			# terminating pods still count until they are gone
			return True
		phase = pod.status.phase if pod.status else None
		return phase in ("Pending", "Running")

	def log_tail(self, node: Node, lines: int = 50) -> str:
		if not node.handle:
			return ""
		try:
			return self.core.read_namespaced_pod_log(name=node.handle, namespace=self.namespace, tail_lines=lines)
		except ApiException as e:
			logger.debug(f"Could not read logs for pod {node.handle}: {e.reason}")
			return ""
