from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from devnet.state import ExecutionMode


@dataclass
class BuildInstructions:
	repo_url: str
	command: List[str]
	env: Dict[str, str] = field(default_factory=dict)
	artifact_patterns: List[str] = field(default_factory=list)  # globs relative to the checkout
	tool: str = "make"

	def to_dict(self) -> Dict[str, Any]:
		return {
			"repo_url": self.repo_url,
			"command": list(self.command),
			"env": dict(self.env),
			"artifact_patterns": list(self.artifact_patterns),
			"tool": self.tool,
		}

	@classmethod
	def from_dict(cls, data: Dict[str, Any]) -> "BuildInstructions":
		return cls(
			repo_url=data["repo_url"],
			command=list(data.get("command", [])),
			env=dict(data.get("env") or {}),
			artifact_patterns=list(data.get("artifact_patterns") or []),
			tool=data.get("tool", "make"),
		)


class NetworkModule(ABC):
	"""Capabilities a chain plugin provides to the core.

	The core never branches on chain identity; everything chain-specific goes
	through these methods.
	"""

	@abstractmethod
	def name(self) -> str:
		raise NotImplementedError

	@abstractmethod
	def version(self) -> str:
		raise NotImplementedError

	@abstractmethod
	def binary_name(self) -> str:
		raise NotImplementedError

	@abstractmethod
	def build_instructions(self, network: str) -> BuildInstructions:
		raise NotImplementedError

	@abstractmethod
	def generate_genesis(self, params: Dict[str, Any]) -> Dict[str, Any]:
		"""Return the genesis document for ``params`` (chain_id, validators, keys...)."""
		raise NotImplementedError

	def supports_docker(self) -> bool:
		return False

	def default_execution_mode(self) -> ExecutionMode:
		return ExecutionMode.LOCAL

	def default_chain_id(self) -> str:
		return f"{self.name()}-devnet-1"

	def default_version(self) -> str:
		return "main"

	def default_image(self) -> Optional[str]:
		return None

	def start_command(self, home_dir: str, ports: Dict[str, int]) -> List[str]:
		"""Arguments passed to the node binary (the binary itself is prepended by the core)."""
		return [
			"start",
			"--home", home_dir,
			"--rpc.laddr", f"tcp://0.0.0.0:{ports['rpc']}",
			"--p2p.laddr", f"tcp://0.0.0.0:{ports['p2p']}",
		]

	def close(self) -> None:
		pass
