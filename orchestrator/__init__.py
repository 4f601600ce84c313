"""Document orchestrator: page-level analysis with counter-based completion."""

__version__ = "0.1.0"
