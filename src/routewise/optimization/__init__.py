"""Provider selection."""

from routewise.optimization.selector import AccuracyCostSelector, DEFAULT_THRESHOLD_PERCENT

__all__ = ["AccuracyCostSelector", "DEFAULT_THRESHOLD_PERCENT"]
