"""Shared observability helpers."""

from common.observability.metrics import batch_metrics

__all__ = ["batch_metrics"]
