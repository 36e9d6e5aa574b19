"""
WinDiff - window-based differential binding analysis.

Counts sequencing fragments into sliding windows, models them with a
negative binomial quasi-likelihood GLM and reports differentially bound
regions with region-level FDR control.
"""

import logging
from typing import Optional

__version__ = "0.1.0"
__author__ = "WinDiff Team"


def configure_logging(level: Optional[str] = None) -> None:
    """Configure package logging from ``level`` or ``Settings.log_level``."""
    from .config import settings

    level = (level or settings.log_level).upper()
    logging.basicConfig(level=level, format=settings.log_format)
    logging.getLogger(__name__).setLevel(level)
