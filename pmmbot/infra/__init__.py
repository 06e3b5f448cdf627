"""
Infrastructure helpers: logging setup.
"""

from pmmbot.infra.logging_cfg import build_logger, log_event

__all__ = ["build_logger", "log_event"]
