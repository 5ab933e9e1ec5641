"""
Strategy Allocator Analytics.

Return extraction, portfolio sampling and metrics, and forward projection.
"""

from __future__ import annotations

from .frontier import *
from .projection import *
from .returns import *

__all__ = [name for name in globals() if not name.startswith("_")]
