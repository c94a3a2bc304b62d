"""Run-scoped streaming analysis and grounded chat client for keyword market research."""

__version__ = "0.3.0"
