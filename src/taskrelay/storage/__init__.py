"""Flat-file persistence for task records."""
