"""
Drift reporting between declared reference patterns and stored patterns.
"""

from .pattern_checker import (
    PatternFreshnessChecker,
    PatternReport,
    PatternStatus,
    StaticPatternSource,
    YamlPatternSource,
)

__all__ = [
    "PatternFreshnessChecker",
    "PatternReport",
    "PatternStatus",
    "StaticPatternSource",
    "YamlPatternSource",
]
