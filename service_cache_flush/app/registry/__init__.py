"""
Layer registry package.

Provides the read-only view of configured cache layers: a JSON file loader
for local deployments and a PostgreSQL reader for the shared config table.
"""

from .loader import FileLayerRegistry, LayerRegistry, StaticLayerRegistry, select_layers

__all__ = ["FileLayerRegistry", "LayerRegistry", "StaticLayerRegistry", "select_layers"]
