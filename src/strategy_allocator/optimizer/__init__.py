"""Hierarchical optimization and margin feasibility."""

from __future__ import annotations

from .hierarchical import *
from .margin import *

__all__ = [name for name in globals() if not name.startswith("_")]
