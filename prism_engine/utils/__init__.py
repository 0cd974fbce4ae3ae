"""
Utility modules for the extension runtime.
"""

# Import key utilities for easy access
from prism_engine.utils.config import Config
from prism_engine.utils.dispatch import InlineDispatcher, OwnerDispatcher
from prism_engine.utils.logging import setup_logging, log_exception, PerformanceLogger

__all__ = [
    'Config',
    'InlineDispatcher',
    'OwnerDispatcher',
    'setup_logging',
    'log_exception',
    'PerformanceLogger',
]
