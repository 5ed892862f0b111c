from __future__ import annotations

import os
import logging
from typing import Optional

from devnet.api import create_app
from devnet.config import Config, load_config
from devnet.orchestrator import DevnetOrchestrator
from devnet.plugins import PluginRegistry

logger = logging.getLogger(__name__)


def build_app(config: Optional[Config] = None):
	"""Build the Flask app from the YAML config (DEVNET_CONFIG) and DEVNET_* overrides."""
	if config is None:
		config = load_config(os.getenv("DEVNET_CONFIG"))
	registry = PluginRegistry(config.plugin_dirs)
	orchestrator = DevnetOrchestrator(config, registry)
	logger.info(f"Devnet home: {config.home_dir}, plugin dirs: {[str(d) for d in config.plugin_dirs]}")
	return create_app(orchestrator, registry, config)


if __name__ == "__main__":
	config = load_config(os.getenv("DEVNET_CONFIG"))
	logging.basicConfig(
		level=config.log_level.upper(),
		format="%(asctime)s %(levelname)s %(name)s: %(message)s",
	)
	app = build_app(config)
	app.run(host=os.getenv("DEVNET_API_HOST", "127.0.0.1"), port=int(os.getenv("DEVNET_API_PORT", "8080")))
