"""Stage and task orchestration for CLI coding agents."""

__version__ = "0.3.0"
