"""Content-addressed store of built node binaries.

Each cache instance is scoped to one (binary name, network) pair:

    <home>/cache/binaries/<binary>/<network>/<commit>/<binary>
    <home>/cache/binaries/<binary>/<network>/<commit>/metadata.json

The binary executed under its plain name lives at ``<home>/bin/<binary>`` and
is a symlink into the cache. Switching versions replaces that link with one
rename, so a reader always sees either the old or the new target.
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
import tempfile
import threading
import time
import uuid
from pathlib import Path
from typing import Dict, List, Optional

from devnet import paths
from devnet.errors import IOFailure, NotFound, ValidationError
from devnet.fileio import read_json, write_json_atomic
from devnet.state import CachedBinary, CacheStats, CleanResult, SymlinkInfo

logger = logging.getLogger(__name__)

ACTIVE_SUFFIX = ".active"

# instances sharing an activation link (every network of one binary) share one lock
_link_locks: Dict[str, threading.RLock] = {}
_link_locks_guard = threading.Lock()


def _lock_for(link_path: Path) -> threading.RLock:
    key = os.path.abspath(str(link_path))
    with _link_locks_guard:
        lock = _link_locks.get(key)
        if lock is None:
            lock = threading.RLock()
            _link_locks[key] = lock
        return lock


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(str(path), os.X_OK)


def _read_active_target(link_path: Path, active_file: Path) -> Optional[str]:
    if link_path.is_symlink():
        target = os.readlink(str(link_path))
        if not os.path.isabs(target):
            target = os.path.join(str(link_path.parent), target)
        return target
    if active_file.is_file():
        try:
            return read_json(active_file).get("target")
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable indirection file {active_file}: {e}")
            return None
    return None


def active_binary(home_dir: os.PathLike, binary_name: str) -> Optional[str]:
    """Executable currently activated under ``binary_name``, whatever network it was built for."""
    link_path = paths.binary_link_path(home_dir, binary_name)
    target = _read_active_target(link_path, link_path.with_name(binary_name + ACTIVE_SUFFIX))
    if target is not None:
        return target if _is_executable(Path(target)) else None
    if link_path.is_file() and _is_executable(link_path):
        return str(link_path)
    return None


class BinaryCache:
    def __init__(self, home_dir: os.PathLike, binary_name: str, network: str) -> None:
        if not binary_name:
            raise ValidationError("binary name must not be empty")
        if not network:
            raise ValidationError("network must not be empty")
        self.home_dir = Path(home_dir)
        self.binary_name = binary_name
        self.network = network
        self.cache_dir = paths.binary_cache_dir(self.home_dir, binary_name, network)
        self.link_path = paths.binary_link_path(self.home_dir, binary_name)
        self.active_file = self.link_path.with_name(binary_name + ACTIVE_SUFFIX)
        self._index: Dict[str, CachedBinary] = {}
        self._lock = _lock_for(self.link_path)

    # ------------------------------------------------------------------
    # layout helpers
    # ------------------------------------------------------------------

    def entry_dir(self, commit_hash: str) -> Path:
        return self.cache_dir / commit_hash

    def entry_binary(self, commit_hash: str) -> Path:
        return self.entry_dir(commit_hash) / self.binary_name

    def _check_commit(self, commit_hash: str) -> None:
        if not commit_hash:
            raise ValidationError("commit hash must not be empty")
        if "/" in commit_hash or "\\" in commit_hash or commit_hash in (".", ".."):
            raise ValidationError(f"invalid commit hash: {commit_hash!r}")

    def _read_entry(self, commit_hash: str) -> Optional[CachedBinary]:
        meta_path = self.entry_dir(commit_hash) / paths.METADATA_FILE
        binary = self.entry_binary(commit_hash)
        if not meta_path.is_file() or not binary.is_file():
            return None
        try:
            data = read_json(meta_path)
            entry = CachedBinary.from_dict(data, binary_path=str(binary))
        except (OSError, ValueError, TypeError) as e:
            logger.debug(f"Skipping invalid cache entry {commit_hash}: {e}")
            return None
        if entry.commit_hash != commit_hash:
            logger.debug(f"Skipping cache entry {commit_hash}: metadata names {entry.commit_hash}")
            return None
        return entry

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Create the directory structure and load the index. Safe to call repeatedly."""
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            self.link_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise IOFailure(f"failed to create cache directories: {e}") from e

        index: Dict[str, CachedBinary] = {}
        for child in sorted(self.cache_dir.iterdir()):
            if not child.is_dir() or child.name.startswith("."):
                continue
            entry = self._read_entry(child.name)
            if entry is not None:
                index[child.name] = entry
        with self._lock:
            self._index = index
        logger.debug(f"Loaded {len(index)} cached {self.binary_name} binaries for {self.network}")

    def lookup(self, commit_hash: str) -> Optional[CachedBinary]:
        if not commit_hash:
            return None
        entry = self._index.get(commit_hash)
        if entry is not None and Path(entry.binary_path).is_file():
            return entry
        # another instance may have stored it since initialize()
        return self._read_entry(commit_hash)

    def is_cached(self, commit_hash: str) -> bool:
        entry = self.lookup(commit_hash)
        return entry is not None and _is_executable(Path(entry.binary_path))

    def store(
        self,
        artifact_path: os.PathLike,
        commit_hash: str,
        ref: str,
        network: Optional[str] = None,
        build_time: Optional[float] = None,
    ) -> CachedBinary:
        """
        Copy an artifact into the cache under its commit hash.

        Storing a commit that is already cached returns the existing entry and
        leaves the stored artifact untouched.
        """
        self._check_commit(commit_hash)
        src = Path(artifact_path)

        with self._lock:
            existing = self.lookup(commit_hash)
            if existing is not None and _is_executable(Path(existing.binary_path)):
                logger.info(f"Commit {commit_hash[:12]} already cached, skipping store")
                self._index[commit_hash] = existing
                return existing

            if not src.is_file():
                raise NotFound(f"artifact not found: {src}")

            entry_dir = self.entry_dir(commit_hash)
            dest = self.entry_binary(commit_hash)
            tmp = None
            try:
                entry_dir.mkdir(parents=True, exist_ok=True)
                fd, tmp = tempfile.mkstemp(prefix=f".{self.binary_name}.", suffix=".tmp", dir=str(entry_dir))
                os.close(fd)
                shutil.copyfile(str(src), tmp)
                mode = stat.S_IMODE(src.stat().st_mode) | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH
                os.chmod(tmp, mode)
                os.replace(tmp, dest)
                tmp = None

                entry = CachedBinary(
                    commit_hash=commit_hash,
                    ref=ref,
                    build_time=build_time if build_time is not None else time.time(),
                    size=dest.stat().st_size,
                    network=network or self.network,
                    binary_path=str(dest),
                )
                # sidecar last: an entry without metadata is never reported
                write_json_atomic(entry_dir / paths.METADATA_FILE, entry.to_dict())
            except OSError as e:
                raise IOFailure(f"failed to store {src} as {commit_hash}: {e}") from e
            finally:
                if tmp is not None:
                    try:
                        os.unlink(tmp)
                    except FileNotFoundError:
                        pass

            self._index[commit_hash] = entry
            logger.info(f"Cached {self.binary_name} {commit_hash[:12]} ({entry.size} bytes) for {entry.network}")
            return entry

    def activate(self, commit_hash: str) -> str:
        """Point ``<home>/bin/<binary>`` at a cached commit. Returns the target path."""
        self._check_commit(commit_hash)
        with self._lock:
            if not self.is_cached(commit_hash):
                raise NotFound(f"commit {commit_hash} is not cached for {self.binary_name}/{self.network}")
            target = str(self.entry_binary(commit_hash).resolve())

            try:
                self.link_path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise IOFailure(f"failed to create {self.link_path.parent}: {e}") from e

            if self.link_path.exists() and not self.link_path.is_symlink():
                logger.warning(f"Replacing unmanaged file at {self.link_path}")

            tmp_link = self.link_path.with_name(f".{self.binary_name}.{uuid.uuid4().hex}.link")
            try:
                os.symlink(target, str(tmp_link))
            except (NotImplementedError, OSError) as e:
                logger.info(f"Symlinks unavailable ({e}), using indirection file {self.active_file}")
                try:
                    write_json_atomic(self.active_file, {"target": target, "commit_hash": commit_hash})
                except OSError as e2:
                    raise IOFailure(f"failed to write {self.active_file}: {e2}") from e2
                return target

            try:
                os.replace(str(tmp_link), str(self.link_path))
            except OSError as e:
                try:
                    os.unlink(str(tmp_link))
                except FileNotFoundError:
                    pass
                raise IOFailure(f"failed to activate {commit_hash}: {e}") from e

            if self.active_file.exists():
                self.active_file.unlink()
            logger.info(f"Activated {self.binary_name} {commit_hash[:12]}")
            return target

    def _active_target(self) -> Optional[str]:
        return _read_active_target(self.link_path, self.active_file)

    def _commit_for_target(self, target: Optional[str]) -> Optional[str]:
        if not target:
            return None
        target_path = Path(target)
        try:
            rel = target_path.resolve().relative_to(self.cache_dir.resolve())
        except (ValueError, OSError):
            return None
        parts = rel.parts
        if len(parts) == 2 and parts[1] == self.binary_name:
            return parts[0]
        return None

    def active_binary_path(self) -> Optional[str]:
        """Executable path behind the binary name, or None if nothing usable is active."""
        return active_binary(self.home_dir, self.binary_name)

    def active_commit(self) -> Optional[str]:
        return self._commit_for_target(self._active_target())

    def symlink_info(self) -> SymlinkInfo:
        info = SymlinkInfo()
        if self.link_path.is_symlink() or self.active_file.is_file():
            info.exists = True
            info.target = self._active_target()
            info.commit_hash = self._commit_for_target(info.target)
            info.managed = info.commit_hash is not None
        elif self.link_path.exists():
            info.exists = True
            info.target = str(self.link_path)
            info.is_regular_file = self.link_path.is_file()
        return info

    def list(self) -> List[CachedBinary]:
        if not self.cache_dir.is_dir():
            return []
        entries = []
        for child in self.cache_dir.iterdir():
            if not child.is_dir() or child.name.startswith("."):
                continue
            entry = self._read_entry(child.name)
            if entry is not None:
                entries.append(entry)
        entries.sort(key=lambda e: e.build_time)
        return entries

    def stats(self) -> CacheStats:
        entries = self.list()
        return CacheStats(total_entries=len(entries), total_size=sum(e.size for e in entries))

    def remove(self, commit_hash: str) -> None:
        self._check_commit(commit_hash)
        with self._lock:
            entry_dir = self.entry_dir(commit_hash)
            if not entry_dir.exists():
                raise NotFound(f"commit {commit_hash} is not cached")
            if self.active_commit() == commit_hash:
                self._drop_active_link()
            try:
                shutil.rmtree(str(entry_dir))
            except OSError as e:
                raise IOFailure(f"failed to remove cache entry {commit_hash}: {e}") from e
            self._index.pop(commit_hash, None)
            logger.info(f"Removed cached {self.binary_name} {commit_hash[:12]}")

    def _drop_active_link(self) -> None:
        for p in (self.link_path, self.active_file):
            if p.is_symlink() or p.is_file():
                try:
                    p.unlink()
                except FileNotFoundError:
                    pass

    def clean(self, keep_active: bool = True) -> CleanResult:
        """Remove cache entries, optionally keeping the active one. Per-entry errors are collected."""
        result = CleanResult()
        with self._lock:
            active = self.active_commit()
            if not self.cache_dir.is_dir():
                return result
            for child in sorted(self.cache_dir.iterdir()):
                if not child.is_dir() or child.name.startswith("."):
                    continue
                commit = child.name
                if keep_active and commit == active:
                    result.kept.append(commit)
                    continue
                try:
                    if commit == active:
                        self._drop_active_link()
                    shutil.rmtree(str(child))
                    self._index.pop(commit, None)
                    result.removed.append(commit)
                except OSError as e:
                    logger.warning(f"Failed to remove cache entry {commit}: {e}")
                    result.errors[commit] = str(e)
        logger.info(f"Cache clean: removed {len(result.removed)}, kept {len(result.kept)}, errors {len(result.errors)}")
        return result
