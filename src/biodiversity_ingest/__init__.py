"""Ingestion, normalization, and enrichment of Darwin Core Archives."""

__version__ = "0.1.0"
