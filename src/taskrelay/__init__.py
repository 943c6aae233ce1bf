"""Filesystem-coordinated task pipeline for CLI coding agents."""

__version__ = "0.1.0"
