"""
cascade_config -- cascade configuration.

``load_config()`` is the single entry point. The kernel never imports
this package; services receive a ``CascadeConfig`` through their
constructors.
"""

from cascade_config.loader import load_config
from cascade_config.schema import CascadeConfig, PoolAccountConfig

__all__ = ["CascadeConfig", "PoolAccountConfig", "load_config"]
