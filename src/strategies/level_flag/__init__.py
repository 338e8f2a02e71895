"""Flag pattern / support-resistance level engine."""

from .flag_detector import FlagCandidate, FlagDetector
from .level_detector import LevelDetector
from .level_manager import LevelManager
from .pattern_manager import PatternManager
from .strategy import AnalysisReport, LevelFlagStrategy

__all__ = [
    "AnalysisReport",
    "FlagCandidate",
    "FlagDetector",
    "LevelDetector",
    "LevelFlagStrategy",
    "LevelManager",
    "PatternManager",
]
