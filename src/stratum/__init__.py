"""Stratum: layered context engine for long-running chat sessions."""

__version__ = "0.1.0"
