"""Multi-agent pipeline for long-form fiction manuscripts."""

__version__ = "0.2.0"
