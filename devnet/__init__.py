"""
Devnet builder core package.

Modules:
- state: devnet, node and cache records plus metadata persistence
- cache: content-addressed binary cache with atomic activation
- builder: git ref -> commit -> build -> cache pipeline
- network / plugins / plugin_server: chain capability interface and plugin loading
- orchestrator: provision, run, stop and destroy of multi-node devnets
- runtime: local process and Kubernetes pod launchers
- health: node RPC health checks
- passthrough: run the active node binary directly
- api: REST API surface over the orchestrator and cache
"""
