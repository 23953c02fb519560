"""
Common package for pcl_aggregator.

Shared constants, configuration, errors and transforms.

Subpackages:
- transforms/: rigid transform helpers
"""

from __future__ import annotations

from importlib import import_module
from typing import Any

__all__ = [
    "AggregatorParams",
    "StreamParams",
    "constants",
    "load_params",
]

_LAZY_ATTRS: dict[str, tuple[str, str | None]] = {
    "AggregatorParams": ("pcl_aggregator.common.param_models", "AggregatorParams"),
    "StreamParams": ("pcl_aggregator.common.param_models", "StreamParams"),
    "load_params": ("pcl_aggregator.common.param_models", "load_params"),
    # Expose these as submodules, but do not eagerly import them at package import time.
    "constants": ("pcl_aggregator.common.constants", None),
}


def __getattr__(name: str) -> Any:
    target = _LAZY_ATTRS.get(name)
    if target is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    module_name, attr_name = target
    module = import_module(module_name)
    return module if attr_name is None else getattr(module, attr_name)


def __dir__() -> list[str]:
    return sorted(set(globals().keys()) | set(_LAZY_ATTRS.keys()))
