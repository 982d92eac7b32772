"""Agent core for conversational editing of numbered question/answer documents."""

__version__ = "0.1.0"

__all__ = ["__version__"]
