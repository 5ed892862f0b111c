"""On-disk layout under the devnet home directory."""

from __future__ import annotations

import os
from pathlib import Path

DEFAULT_HOME_DIRNAME = ".devnet-builder"

DEVNET_DIR = "devnet"
BIN_DIR = "bin"
BINARY_CACHE_DIR = os.path.join("cache", "binaries")
BUILD_DIR = "build"
PLUGINS_DIR = "plugins"
LOCK_DIR = ".lock"

METADATA_FILE = "metadata.json"
NODE_FILE = "node.json"
GENESIS_FILE = "genesis.json"


def default_home_dir() -> Path:
    return Path.home() / DEFAULT_HOME_DIRNAME


def devnet_dir(home_dir: os.PathLike) -> Path:
    return Path(home_dir) / DEVNET_DIR


def devnet_metadata_path(home_dir: os.PathLike) -> Path:
    return devnet_dir(home_dir) / METADATA_FILE


def node_dir(home_dir: os.PathLike, index: int) -> Path:
    return devnet_dir(home_dir) / f"node{index}"


def bin_dir(home_dir: os.PathLike) -> Path:
    return Path(home_dir) / BIN_DIR


def binary_link_path(home_dir: os.PathLike, binary_name: str) -> Path:
    return bin_dir(home_dir) / binary_name


def binary_cache_dir(home_dir: os.PathLike, binary_name: str, network: str) -> Path:
    return Path(home_dir) / BINARY_CACHE_DIR / binary_name / network


def build_workspace(home_dir: os.PathLike, network: str, ref: str, module_name: str) -> Path:
    # refs such as "feature/x" must not create nested directories
    safe_ref = ref.replace("/", "_").replace("\\", "_")
    return Path(home_dir) / BUILD_DIR / network / safe_ref / module_name


def plugins_dir(home_dir: os.PathLike) -> Path:
    return Path(home_dir) / PLUGINS_DIR


def lock_dir(home_dir: os.PathLike) -> Path:
    return Path(home_dir) / LOCK_DIR
