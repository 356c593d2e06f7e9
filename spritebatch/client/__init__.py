"""Ludo.ai API client."""

from .ludo import LudoAPIError, LudoClient, OperationError

__all__ = ["LudoClient", "LudoAPIError", "OperationError"]
