"""Observability: error capture and prometheus metrics."""

from ephemera.observability.errors import ErrorReporter
from ephemera.observability.metrics import generate_metrics, get_content_type

__all__ = [
    "ErrorReporter",
    "generate_metrics",
    "get_content_type",
]
