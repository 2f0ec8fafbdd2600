"""Embedding consistency and hybrid retrieval for work notes."""

__version__ = "0.1.0"
