"""Plugin-side loop: expose a NetworkModule over stdin/stdout.

A plugin executable is typically just::

    #!/usr/bin/env python3
    from devnet.plugin_server import serve
    from mychain import MyChainModule

    serve(MyChainModule())
"""

from __future__ import annotations

import json
import logging
import os
import sys
from typing import Any, Dict, Optional, TextIO

from devnet.network import NetworkModule
from devnet.plugins import CORE_PROTOCOL_VERSION, MAGIC_COOKIE_KEY, MAGIC_COOKIE_VALUE, SUPPORTED_APP_VERSIONS
from devnet.state import ExecutionMode

logger = logging.getLogger(__name__)


def _dispatch(module: NetworkModule, method: str, params: Dict[str, Any]) -> Any:
    if method == "name":
        return module.name()
    if method == "version":
        return module.version()
    if method == "binary_name":
        return module.binary_name()
    if method == "build_instructions":
        return module.build_instructions(params["network"]).to_dict()
    if method == "generate_genesis":
        return module.generate_genesis(params)
    if method == "supports_docker":
        return module.supports_docker()
    if method == "default_execution_mode":
        mode = module.default_execution_mode()
        return mode.value if isinstance(mode, ExecutionMode) else str(mode)
    if method == "default_chain_id":
        return module.default_chain_id()
    if method == "default_version":
        return module.default_version()
    if method == "default_image":
        return module.default_image()
    if method == "start_command":
        return module.start_command(params["home_dir"], params["ports"])
    raise KeyError(f"unknown method: {method}")


def serve(
    module: NetworkModule,
    stdin: Optional[TextIO] = None,
    stdout: Optional[TextIO] = None,
    env: Optional[Dict[str, str]] = None,
) -> int:
    """Answer requests until stdin closes. Returns the process exit code."""
    stdin = stdin or sys.stdin
    stdout = stdout or sys.stdout
    env = os.environ if env is None else env

    if env.get(MAGIC_COOKIE_KEY) != MAGIC_COOKIE_VALUE:
        sys.stderr.write("This binary is a devnet-builder plugin and is not meant to be executed directly.\n")
        return 1

    stdout.write(f"{CORE_PROTOCOL_VERSION}|{SUPPORTED_APP_VERSIONS[1]}|stdio|json\n")
    stdout.flush()

    for line in stdin:
        line = line.strip()
        if not line:
            continue
        req_id = None
        try:
            request = json.loads(line)
            req_id = request.get("id")
            result = _dispatch(module, request.get("method", ""), request.get("params") or {})
            response = {"id": req_id, "result": result}
        except Exception as e:  # reported to the caller as a protocol error
            logger.debug(f"Plugin call failed: {e}")
            response = {"id": req_id, "error": str(e) or type(e).__name__}
        stdout.write(json.dumps(response) + "\n")
        stdout.flush()
    return 0
