"""Bulk sprite animation queue for the Ludo.ai API."""

__version__ = "0.1.0"
