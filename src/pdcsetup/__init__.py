"""
pdcsetup - openPDC backend provisioning and configuration migration tool
"""

__version__ = "0.3.0"

from .core import SetupError, SetupOrchestrator

__all__ = ["SetupOrchestrator", "SetupError"]
