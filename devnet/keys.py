"""Per-node key material.

Keys are random placeholders in the layout node binaries expect; chain
plugins turn the public parts into genesis validators. Existing files are
never overwritten, so re-provisioning a node keeps its identity.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import os
import secrets
from pathlib import Path
from typing import Any, Dict

from devnet.fileio import read_json, write_json_atomic

logger = logging.getLogger(__name__)

NODE_KEY_FILE = os.path.join("config", "node_key.json")
VALIDATOR_KEY_FILE = os.path.join("config", "priv_validator_key.json")
VALIDATOR_STATE_FILE = os.path.join("data", "priv_validator_state.json")


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _new_node_key() -> Dict[str, Any]:
    return {"priv_key": {"type": "tendermint/PrivKeyEd25519", "value": _b64(secrets.token_bytes(64))}}


def _new_validator_key() -> Dict[str, Any]:
    priv = secrets.token_bytes(64)
    pub = priv[32:]
    address = hashlib.sha256(pub).hexdigest()[:40].upper()
    return {
        "address": address,
        "pub_key": {"type": "tendermint/PubKeyEd25519", "value": _b64(pub)},
        "priv_key": {"type": "tendermint/PrivKeyEd25519", "value": _b64(priv)},
    }


def node_id(node_key: Dict[str, Any]) -> str:
    raw = base64.b64decode(node_key["priv_key"]["value"])
    return hashlib.sha256(raw[32:]).hexdigest()[:40]


def _ensure(path: Path, factory, mode: int) -> Dict[str, Any]:
    if path.exists():
        return read_json(path)
    data = factory()
    write_json_atomic(path, data, mode=mode)
    return data


def ensure_node_keys(node_home: os.PathLike) -> Dict[str, Any]:
    """Create missing key files under ``node_home`` and return the public identity."""
    home = Path(node_home)
    node_key = _ensure(home / NODE_KEY_FILE, _new_node_key, 0o600)
    validator_key = _ensure(home / VALIDATOR_KEY_FILE, _new_validator_key, 0o600)
    _ensure(home / VALIDATOR_STATE_FILE, lambda: {"height": "0", "round": 0, "step": 0}, 0o600)
    return {
        "node_id": node_id(node_key),
        "address": validator_key["address"],
        "pub_key": validator_key["pub_key"],
    }
