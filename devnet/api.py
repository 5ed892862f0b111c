from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request

from devnet.cache import BinaryCache
from devnet.config import Config
from devnet.errors import AlreadyExists, DevnetError, NotFound, Timeout, ValidationError
from devnet.orchestrator import DevnetOrchestrator, ProvisionOptions, RunOptions
from devnet.plugins import PluginRegistry

logger = logging.getLogger(__name__)

_STATUS_FOR_ERROR = (
	(ValidationError, 400),
	(NotFound, 404),
	(AlreadyExists, 409),
	(Timeout, 504),
)


def _status_for(err: DevnetError) -> int:
	for cls, status in _STATUS_FOR_ERROR:
		if isinstance(err, cls):
			return status
	return 500


def _seconds(body: Dict[str, Any], key: str) -> Optional[float]:
	"""Optional non-negative number of seconds from a request body."""
	value = body.get(key)
	if value is None:
		return None
	if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
		raise ValidationError(f"{key} must be a non-negative number of seconds, got {value!r}")
	return float(value)


def create_app(
	orchestrator: DevnetOrchestrator,
	registry: PluginRegistry,
	config: Optional[Config] = None,
) -> Flask:
	app = Flask(__name__)
	app.config['orchestrator'] = orchestrator
	app.config['registry'] = registry
	app.config['devnet_config'] = config or orchestrator.config

	@app.errorhandler(DevnetError)
	def handle_devnet_error(err: DevnetError) -> Any:
		status = _status_for(err)
		if status >= 500:
			logger.error(f"{request.method} {request.path} failed: {err}")
		return jsonify(err.to_dict()), status

	def _body() -> Dict[str, Any]:
		body = request.get_json(silent=True)
		if body is None:
			return {}
		if not isinstance(body, dict):
			raise ValidationError("request body must be a JSON object")
		return body

	def _cache_from(args: Dict[str, Any]) -> BinaryCache:
		plugin = args.get("plugin")
		if not plugin:
			raise ValidationError("missing 'plugin'")
		network = args.get("network", "mainnet")
		module = app.config['registry'].load(plugin)
		cache = BinaryCache(app.config['devnet_config'].home_dir, module.binary_name(), network)
		cache.initialize()
		return cache

	@app.get("/devnet")
	def get_devnet() -> Any:
		orch = app.config['orchestrator']
		return jsonify(orch.load_metadata().to_dict())

	@app.post("/devnet/provision")
	def provision() -> Any:
		body = _body()
		opts = ProvisionOptions(
			plugin=body.get("plugin", ""),
			network_source=body.get("network_source", "mainnet"),
			validators=body.get("validators", 4),
			execution_mode=body.get("execution_mode"),
			chain_id=body.get("chain_id"),
			ref=body.get("ref"),
			binary_path=body.get("binary_path"),
			image=body.get("image"),
			build_timeout=_seconds(body, "build_timeout"),
		)
		devnet = app.config['orchestrator'].provision(opts)
		return jsonify(devnet.to_dict()), 201

	@app.post("/devnet/run")
	def run() -> Any:
		body = _body()
		result = app.config['orchestrator'].run(RunOptions(health_timeout=_seconds(body, "health_timeout")))
		return jsonify(result.to_dict())

	@app.post("/devnet/stop")
	def stop() -> Any:
		body = _body()
		result = app.config['orchestrator'].stop(timeout=_seconds(body, "timeout"))
		return jsonify(result.to_dict())

	@app.delete("/devnet")
	def destroy() -> Any:
		devnet = app.config['orchestrator'].destroy()
		return jsonify(devnet.to_dict())

	@app.get("/devnet/nodes/<int:index>/logs")
	def node_logs(index: int) -> Any:
		lines = request.args.get("lines", type=int)
		logs = app.config['orchestrator'].node_logs(index, lines)
		return jsonify({"index": index, "logs": logs})

	@app.get("/cache")
	def list_cache() -> Any:
		cache = _cache_from(request.args)
		return jsonify({
			"binary": cache.binary_name,
			"network": cache.network,
			"entries": [dict(e.to_dict(), binary_path=e.binary_path) for e in cache.list()],
		})

	@app.get("/cache/info")
	def cache_info() -> Any:
		cache = _cache_from(request.args)
		return jsonify({
			"binary": cache.binary_name,
			"network": cache.network,
			"symlink": asdict(cache.symlink_info()),
			"stats": asdict(cache.stats()),
		})

	@app.post("/cache/clean")
	def clean_cache() -> Any:
		body = _body()
		cache = _cache_from(body)
		result = cache.clean(keep_active=bool(body.get("keep_active", True)))
		return jsonify(asdict(result))

	@app.post("/cache/activate")
	def activate() -> Any:
		body = _body()
		commit_hash = body.get("commit_hash")
		if not commit_hash:
			return jsonify({"error": "missing 'commit_hash'", "kind": "validation", "retryable": True}), 400
		cache = _cache_from(body)
		target = cache.activate(commit_hash)
		return jsonify({"status": "ok", "commit_hash": commit_hash, "target": target})

	@app.get("/plugins")
	def list_plugins() -> Any:
		return jsonify({"plugins": app.config['registry'].discover()})

	return app
