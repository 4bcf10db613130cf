"""Stock planner package.

The HTTP app lives in :mod:`stock_planner.api`; importing it builds the module
level ``app``, so it is not pulled in here.
"""
from __future__ import annotations

from .planner import ALL_STORES, PlanningConfig
from .service import PlannerService

__all__ = ["ALL_STORES", "PlanningConfig", "PlannerService"]
