"""Voice synthesis orchestration for interview personas."""

__version__ = "0.1.0"
