"""Utility functions."""

from worknote_retrieval.utils.logging import get_logger, log_error, set_request_id, setup_logging

__all__ = [
    "setup_logging",
    "get_logger",
    "set_request_id",
    "log_error",
]
