"""Runtime that serves administrator-defined HTTP endpoints."""

__version__ = "0.1.0"
