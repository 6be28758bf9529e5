"""choice-sbc package."""

from . import calibration, diagnostics, models, simulate
from .calibration import CalibrationChecker, CalibrationReport, RunResult
from .engine import DrawShapeError, EngineError, NonConvergenceError, get_engine
from .sbc import run_sbc, simulate_run

__all__ = [
    "CalibrationChecker",
    "CalibrationReport",
    "DrawShapeError",
    "EngineError",
    "NonConvergenceError",
    "RunResult",
    "calibration",
    "diagnostics",
    "get_engine",
    "models",
    "run_sbc",
    "simulate",
    "simulate_run",
]
