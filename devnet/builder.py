"""Build node binaries from a git ref and register them in the binary cache.

Pipeline for ``SourceBuilder.build(ref, network)``:

1. resolve the ref to a commit (``git ls-remote``, or after clone as a fallback)
2. return the cached artifact if that commit is already stored
3. clone into ``<home>/build/<network>/<ref>/<module>``
4. run the module's build command, streaming output to ``build.log``
5. locate the artifact and store it in the cache

Concurrent builds of the same (ref, network) are serialized; unrelated keys
run in parallel.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from devnet import paths
from devnet.cache import BinaryCache
from devnet.config import Config
from devnet.errors import BuildFailure, Cancelled, IOFailure, Timeout, ValidationError
from devnet.fileio import tail_lines
from devnet.network import BuildInstructions, NetworkModule
from devnet.process import child_env, run_command

logger = logging.getLogger(__name__)

_HEX_RE = re.compile(r"^[0-9a-fA-F]{7,40}$")
_FULL_HASH_RE = re.compile(r"^[0-9a-fA-F]{40}$")

BUILD_LOG = "build.log"
CLONE_LOG = "clone.log"

# in-flight builds keyed by (workspace, network); refs mapping to one workspace share a lock
_build_locks: Dict[Tuple[str, str], threading.Lock] = {}
_build_locks_guard = threading.Lock()


def _build_lock(key: Tuple[str, str]) -> threading.Lock:
    with _build_locks_guard:
        lock = _build_locks.get(key)
        if lock is None:
            lock = threading.Lock()
            _build_locks[key] = lock
        return lock


def is_commit_hash(ref: str) -> bool:
    return bool(_HEX_RE.match(ref or ""))


def authenticated_url(repo_url: str, token: Optional[str]) -> str:
    """Inject a GitHub token into an https GitHub URL."""
    if token and repo_url.startswith("https://github.com/"):
        return repo_url.replace("https://", f"https://x-access-token:{token}@", 1)
    return repo_url


def mask_secret(text: str, secret: Optional[str]) -> str:
    if secret:
        return text.replace(secret, "***")
    return text


def pick_ref_commit(ls_remote_output: str, ref: str) -> Optional[str]:
    """
    Choose the commit for ``ref`` from ``git ls-remote`` output.

    Priority: annotated tag target (``refs/tags/<ref>^{}``) > tag > branch.
    """
    annotated = tag = branch = None
    for line in ls_remote_output.splitlines():
        parts = line.split()
        if len(parts) < 2:
            continue
        commit, ref_path = parts[0], parts[1]
        if ref_path == f"refs/tags/{ref}^{{}}":
            annotated = commit
        elif ref_path == f"refs/tags/{ref}":
            tag = commit
        elif ref_path == f"refs/heads/{ref}" or (
            ref_path.startswith("refs/heads/") and ref_path.endswith("/" + ref)
        ):
            branch = commit
    return annotated or tag or branch


@dataclass
class BuildResult:
    binary_path: str
    commit_hash: str
    ref: str
    cached: bool = False

    def to_dict(self) -> dict:
        return {
            "binary_path": self.binary_path,
            "commit_hash": self.commit_hash,
            "ref": self.ref,
            "cached": self.cached,
        }


CacheFactory = Callable[[Path, str, str], BinaryCache]


class SourceBuilder:
    def __init__(
        self,
        config: Config,
        module: NetworkModule,
        cache_factory: Optional[CacheFactory] = None,
    ) -> None:
        self.config = config
        self.module = module
        self.cache_factory = cache_factory or BinaryCache
        self._token = os.environ.get("GITHUB_TOKEN") or None

    def cache_for(self, network: str) -> BinaryCache:
        cache = self.cache_factory(self.config.home_dir, self.module.binary_name(), network)
        cache.initialize()
        return cache

    # ------------------------------------------------------------------

    def _git_env(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        env = child_env(extra)
        env["GIT_TERMINAL_PROMPT"] = "0"
        return env


    def _run(self, argv: List[str], deadline: float, cancel=None, cwd=None, env=None,
             log_path=None, keep_lines: Optional[int] = None):
        return run_command(
            argv,
            cwd=str(cwd) if cwd else None,
            env=env or self._git_env(),
            log_path=str(log_path) if log_path else None,
            deadline=deadline,
            cancel=cancel,
            tail_lines=keep_lines or self.config.log_tail_lines,
            display=mask_secret(" ".join(argv), self._token),
        )

    def resolve_ref(self, repo_url: str, ref: str, deadline: float, cancel=None) -> Optional[str]:
        """Resolve a ref remotely. Returns None when it has to be resolved after clone."""
        if _FULL_HASH_RE.match(ref):
            return ref.lower()
        if is_commit_hash(ref):
            # abbreviated hashes are not advertised by the remote
            return None
        url = authenticated_url(repo_url, self._token)
        try:
            result = self._run(["git", "ls-remote", url, ref], deadline, cancel, keep_lines=10000)
        except FileNotFoundError:
            return None
        if result.returncode != 0:
            logger.warning(f"git ls-remote failed for {repo_url}, resolving {ref} after clone")
            return None
        commit = pick_ref_commit(result.tail, ref)
        if commit:
            logger.debug(f"Resolved {ref} to {commit[:12]}")
        return commit

    def _check_tools(self, instructions: BuildInstructions) -> None:
        for tool in ("git", instructions.tool):
            if tool and shutil.which(tool) is None:
                raise BuildFailure(BuildFailure.BUILD_TOOL_MISSING, f"required tool not found on PATH: {tool}")

    def _clone(self, repo_url: str, ref: str, workspace: Path, deadline: float, cancel) -> None:
        url = authenticated_url(repo_url, self._token)
        log_path = workspace.parent / CLONE_LOG
        if workspace.exists():
            shutil.rmtree(str(workspace))
        workspace.parent.mkdir(parents=True, exist_ok=True)

        if not is_commit_hash(ref):
            shallow = self._run(
                ["git", "clone", "--depth", "1", "--branch", ref, url, str(workspace)],
                deadline, cancel, log_path=log_path,
            )
            if shallow.returncode == 0:
                return
            logger.info(f"Shallow clone of {ref} failed, retrying with a full clone")
            if workspace.exists():
                shutil.rmtree(str(workspace))

        full = self._run(["git", "clone", url, str(workspace)], deadline, cancel, log_path=log_path)
        if full.returncode != 0:
            raise BuildFailure(
                BuildFailure.CLONE_FAILED,
                mask_secret(f"git clone of {repo_url} failed with exit code {full.returncode}", self._token),
                log_tail=mask_secret(full.tail, self._token),
            )
        checkout = self._run(["git", "checkout", ref], deadline, cancel, cwd=workspace, log_path=log_path)
        if checkout.returncode != 0:
            raise BuildFailure(
                BuildFailure.CLONE_FAILED,
                f"git checkout {ref} failed with exit code {checkout.returncode}",
                log_tail=checkout.tail,
            )

    def _head_commit(self, workspace: Path, deadline: float, cancel) -> str:
        result = self._run(["git", "rev-parse", "HEAD"], deadline, cancel, cwd=workspace)
        commit = result.tail.strip().splitlines()[-1] if result.tail.strip() else ""
        if result.returncode != 0 or not _FULL_HASH_RE.match(commit):
            raise BuildFailure(BuildFailure.CLONE_FAILED, f"could not read HEAD commit in {workspace}", log_tail=result.tail)
        return commit.lower()

    def find_artifact(self, workspace: Path, instructions: BuildInstructions) -> Path:
        """Locate the built binary: module glob patterns first, then a search by name."""
        binary_name = self.module.binary_name()
        candidates: List[Path] = []
        for pattern in instructions.artifact_patterns:
            candidates.extend(sorted(workspace.glob(pattern)))
        candidates.extend(sorted(workspace.rglob(binary_name)))

        for candidate in candidates:
            if ".git" in candidate.relative_to(workspace).parts:
                continue
            if candidate.is_file() and not candidate.is_symlink() and os.access(str(candidate), os.X_OK):
                return candidate
        raise BuildFailure(
            BuildFailure.ARTIFACT_NOT_FOUND,
            f"no executable {binary_name} found in {workspace} (patterns: {instructions.artifact_patterns})",
        )

    def build(
        self,
        ref: str,
        network: str,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> BuildResult:
        """
        Build ``ref`` for ``network`` and register the artifact in the cache.

        Args:
            ref: Branch, tag or commit hash
            network: Target network type (e.g. "mainnet", "testnet")
            timeout: Seconds allowed for the whole build (defaults to config.build_timeout_s)
            cancel: Event that aborts the build and terminates child processes

        Returns:
            BuildResult, with cached=True when no build was needed

        Raises:
            BuildFailure: clone_failed, build_tool_missing, build_failed or artifact_not_found
            Timeout, Cancelled, ValidationError, IOFailure
        """
        if not ref or not ref.strip():
            raise ValidationError("ref must not be empty")
        if not network:
            raise ValidationError("network must not be empty")
        ref = ref.strip()
        deadline = time.monotonic() + (timeout if timeout is not None else self.config.build_timeout_s)
        module_name = self.module.name()
        workspace = paths.build_workspace(self.config.home_dir, network, ref, module_name)
        key = (str(workspace), network)

        with _build_lock(key):
            if cancel is not None and cancel.is_set():
                raise Cancelled(f"build of {ref} cancelled")
            instructions = self.module.build_instructions(network)
            if not instructions.command:
                raise ValidationError(f"{module_name} has no build command for {network}")
            cache = self.cache_for(network)

            commit = self.resolve_ref(instructions.repo_url, ref, deadline, cancel)
            if commit and cache.is_cached(commit):
                entry = cache.lookup(commit)
                logger.info(f"Using cached {self.module.binary_name()} {commit[:12]} for {ref}")
                return BuildResult(binary_path=entry.binary_path, commit_hash=commit, ref=ref, cached=True)

            self._check_tools(instructions)
            logger.info(f"Building {module_name} {ref} for {network} in {workspace}")
            started = time.monotonic()

            try:
                self._clone(instructions.repo_url, ref, workspace, deadline, cancel)
            except FileNotFoundError as e:
                raise BuildFailure(BuildFailure.BUILD_TOOL_MISSING, f"git not found: {e}") from e
            except OSError as e:
                raise IOFailure(f"failed to prepare workspace {workspace}: {e}") from e

            head = self._head_commit(workspace, deadline, cancel)
            if commit and head != commit:
                logger.warning(f"Remote resolved {ref} to {commit[:12]} but checkout is {head[:12]}, using checkout")
            commit = head

            if cache.is_cached(commit):
                entry = cache.lookup(commit)
                logger.info(f"Commit {commit[:12]} already cached after clone, skipping build")
                return BuildResult(binary_path=entry.binary_path, commit_hash=commit, ref=ref, cached=True)

            log_path = workspace / BUILD_LOG
            env = self._git_env(instructions.env)
            try:
                result = self._run(list(instructions.command), deadline, cancel, cwd=workspace, env=env, log_path=log_path)
            except FileNotFoundError as e:
                raise BuildFailure(BuildFailure.BUILD_TOOL_MISSING, f"build command not found: {instructions.command[0]}") from e
            except (Timeout, Cancelled):
                logger.error(f"Build of {ref} aborted, see {log_path}")
                raise
            if result.returncode != 0:
                logger.error(f"Build of {ref} failed with exit code {result.returncode}, see {log_path}")
                raise BuildFailure(
                    BuildFailure.BUILD_FAILED,
                    f"build command exited with code {result.returncode}",
                    log_tail=tail_lines(log_path, self.config.log_tail_lines) or result.tail,
                )

            artifact = self.find_artifact(workspace, instructions)
            entry = cache.store(artifact, commit, ref, network=network)
            logger.info(f"Built {self.module.binary_name()} {commit[:12]} in {time.monotonic() - started:.1f}s")
            return BuildResult(binary_path=entry.binary_path, commit_hash=commit, ref=ref, cached=False)
