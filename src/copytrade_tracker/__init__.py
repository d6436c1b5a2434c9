"""Copy-trade lead tracker - ingestion scheduler and position derivation."""

__version__ = "0.1.0"
