from __future__ import annotations

from dataclasses import dataclass, field, asdict, fields
from enum import Enum
from typing import Dict, List, Optional, Any
import logging
import os
import time

from devnet import paths
from devnet.errors import IOFailure, NotFound
from devnet.fileio import read_json, write_json_atomic

logger = logging.getLogger(__name__)


class ExecutionMode(str, Enum):
    CONTAINER = "container"
    LOCAL = "local"


class DevnetStatus(str, Enum):
    UNINITIALIZED = "uninitialized"
    PROVISIONED = "provisioned"
    RUNNING = "running"
    STOPPED = "stopped"
    DESTROYED = "destroyed"


class NodeStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    FAILED = "failed"
    STOPPED = "stopped"


def _known(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    # metadata written by newer versions may carry extra keys
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


@dataclass
class NodePorts:
    rpc: int
    p2p: int
    evm_rpc: int = 0


@dataclass
class Node:
    index: int
    name: str
    home_dir: str
    ports: NodePorts
    handle: Optional[str] = None  # pid for local nodes, pod name for containers
    status: NodeStatus = NodeStatus.PENDING
    log_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Node":
        data = _known(cls, data)
        ports = data.get("ports") or {}
        data["ports"] = NodePorts(**_known(NodePorts, ports))
        data["status"] = NodeStatus(data.get("status", NodeStatus.PENDING.value))
        return cls(**data)


@dataclass
class Devnet:
    chain_id: str
    network_source: str
    plugin: str
    execution_mode: ExecutionMode
    validators: int
    home_dir: str
    binary_path: Optional[str] = None
    commit_hash: Optional[str] = None
    image: Optional[str] = None
    status: DevnetStatus = DevnetStatus.UNINITIALIZED
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    nodes: List[Node] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["execution_mode"] = self.execution_mode.value
        d["status"] = self.status.value
        d["nodes"] = [n.to_dict() for n in self.nodes]
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Devnet":
        data = _known(cls, data)
        data["execution_mode"] = ExecutionMode(data.get("execution_mode", ExecutionMode.LOCAL.value))
        data["status"] = DevnetStatus(data.get("status", DevnetStatus.UNINITIALIZED.value))
        data["nodes"] = [Node.from_dict(n) for n in data.get("nodes", [])]
        return cls(**data)

    def touch(self) -> None:
        self.updated_at = time.time()


@dataclass
class CachedBinary:
    commit_hash: str
    ref: str
    build_time: float
    size: int
    network: str
    binary_path: Optional[str] = None  # not persisted in the sidecar

    def to_dict(self) -> Dict[str, Any]:
        return {
            "commit_hash": self.commit_hash,
            "ref": self.ref,
            "build_time": self.build_time,
            "size": self.size,
            "network": self.network,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], binary_path: Optional[str] = None) -> "CachedBinary":
        data = _known(cls, data)
        data.pop("binary_path", None)
        return cls(binary_path=binary_path, **data)


@dataclass
class ActiveSymlink:
    path: str
    target: str
    commit_hash: str


@dataclass
class SymlinkInfo:
    exists: bool = False
    target: Optional[str] = None
    commit_hash: Optional[str] = None
    is_regular_file: bool = False
    managed: bool = False


@dataclass
class CacheStats:
    total_entries: int = 0
    total_size: int = 0


@dataclass
class CleanResult:
    removed: List[str] = field(default_factory=list)
    kept: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)


@dataclass
class FailedNode:
    index: int
    error: str
    log_tail: str = ""


@dataclass
class RunResult:
    devnet: Devnet
    successful_nodes: List[int] = field(default_factory=list)
    failed_nodes: List[FailedNode] = field(default_factory=list)
    all_healthy: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "devnet": self.devnet.to_dict(),
            "successful_nodes": list(self.successful_nodes),
            "failed_nodes": [asdict(f) for f in self.failed_nodes],
            "all_healthy": self.all_healthy,
        }


@dataclass
class StopResult:
    stopped_nodes: List[int] = field(default_factory=list)
    killed_nodes: List[int] = field(default_factory=list)
    failed_nodes: List[FailedNode] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stopped_nodes": list(self.stopped_nodes),
            "killed_nodes": list(self.killed_nodes),
            "failed_nodes": [asdict(f) for f in self.failed_nodes],
        }


# ---------------------------------------------------------------------------
# Metadata persistence
# ---------------------------------------------------------------------------

def devnet_exists(home_dir: os.PathLike) -> bool:
    return paths.devnet_metadata_path(home_dir).is_file()


def load_metadata(home_dir: os.PathLike) -> Devnet:
    path = paths.devnet_metadata_path(home_dir)
    try:
        data = read_json(path)
    except FileNotFoundError as e:
        raise NotFound(f"no devnet found at {paths.devnet_dir(home_dir)}") from e
    except (OSError, ValueError) as e:
        raise IOFailure(f"failed to read devnet metadata {path}: {e}") from e
    try:
        return Devnet.from_dict(data)
    except (TypeError, ValueError, KeyError) as e:
        raise IOFailure(f"corrupt devnet metadata {path}: {e}") from e


def save_metadata(devnet: Devnet) -> None:
    devnet.touch()
    try:
        write_json_atomic(paths.devnet_metadata_path(devnet.home_dir), devnet.to_dict())
        for node in devnet.nodes:
            write_json_atomic(os.path.join(node.home_dir, paths.NODE_FILE), node.to_dict())
    except OSError as e:
        raise IOFailure(f"failed to write devnet metadata: {e}") from e
    logger.debug(f"Saved devnet metadata (status={devnet.status.value})")
