"""Intelligence processing and knowledge-graph construction pipeline."""

__version__ = "0.3.0"
