"""Athena-backed remote query client."""

from .executor import AthenaQueryClient

__all__ = ["AthenaQueryClient"]
