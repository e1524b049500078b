"""Crawl orchestration and gap repair for paginated remote catalogs."""

from __future__ import annotations

import importlib
from typing import TYPE_CHECKING, Any

__all__ = ["crawler", "config_loader", "settings"]

if TYPE_CHECKING:  # pragma: no cover
    from . import config_loader, crawler, settings  # noqa: F401


def __getattr__(name: str) -> Any:
    """Expose subpackages lazily without requiring eager imports."""
    if name in __all__:
        module = importlib.import_module(f"{__name__}.{name}")
        globals()[name] = module
        return module
    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")


def __dir__() -> list[str]:  # pragma: no cover
    return sorted(set(globals()) | set(__all__))
