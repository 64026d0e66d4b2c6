"""
Helper modules for sysproxy.
"""

from .unified_logger import get_binding_logger, get_core_logger, get_logger

__all__ = [
    "get_binding_logger",
    "get_core_logger",
    "get_logger",
]
