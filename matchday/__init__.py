"""Fixture job scheduling, quota scoring and predictor health for football predictions."""

__version__ = "1.0.0"
