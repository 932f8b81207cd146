"""Layered, checkpointable execution of dependent agent tasks."""

__version__ = "0.1.0"
