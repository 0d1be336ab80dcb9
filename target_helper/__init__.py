"""Trellis target-helper: drives target extraction jobs and post-processes their results."""

__version__ = "1.4.0"
