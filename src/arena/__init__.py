"""
Forecast arena engine.

LLM agents trade simulated prediction-market positions in weekly cohorts:
- ledger: positions, cost basis, settlement
- executor / decision: decision requests and trade execution
- snapshots: periodic mark-to-market
- cohort: weekly competition lifecycle
- calibration: Brier scoring
- engine: scheduled passes
"""

from .database import Database
from .engine import ArenaEngine, EngineConfig, build_engine
from .errors import ArenaError, CycleAborted
from .policy import RiskPolicy

__all__ = [
    "ArenaEngine",
    "ArenaError",
    "CycleAborted",
    "Database",
    "EngineConfig",
    "RiskPolicy",
    "build_engine",
]
