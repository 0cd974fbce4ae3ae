"""
Prism Engine - Browser extension runtime for the Prism browser.
"""

from prism_engine.utils.logging import setup_logging

# Console logging only; the browser shell adds a log file when it starts
logger = setup_logging()

# Package information
__version__ = "0.1.0"
__author__ = "Prism Browser Team"
__description__ = "Browser extension runtime: manifests, content scripts, background scripts and content blocking"

logger.debug(f"Prism Engine v{__version__} initialized")
