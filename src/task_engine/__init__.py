"""Task execution engine: dependency-aware step scheduling with durable state."""

__version__ = "0.1.0"
