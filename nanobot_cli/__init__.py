"""
nanobot CLI support -- configuration, provider registry and runtime wiring.

- config:            config.yaml + .env + environment -> validated Config
- provider_registry: static provider metadata and key/base URL resolution
- runtime:           build_runtime(), the full object graph for one process
"""

__version__ = "0.1.0"
