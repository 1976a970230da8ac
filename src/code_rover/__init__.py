"""Multi-agent code quality scanning and fix orchestration."""

__version__ = "0.1.0"
