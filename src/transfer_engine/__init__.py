"""Transfer and contract lifecycle engine with change data capture."""

__version__ = "0.1.0"
