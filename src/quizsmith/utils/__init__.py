"""Utility helpers shared across quizsmith."""

from .logging import get_log_path, get_logger, register_secret, setup_logging

__all__ = ["setup_logging", "get_logger", "get_log_path", "register_secret"]
