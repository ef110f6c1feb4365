"""Service package exports."""

from __future__ import annotations

import importlib
from typing import Any

__all__ = ["datatable", "definition"]


def __getattr__(name: str) -> Any:
    if name in __all__:
        return importlib.import_module(f"tablekit.services.{name}")
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
