"""
FitRecord - BLE Workout Recording Library

A Python library for recording workout sessions from BLE exercise-equipment
sensors (FTMS bikes, CSC sensors and heart rate straps).
"""

__version__ = "0.1.0"
__description__ = "Record workout sessions from BLE exercise-equipment sensors"

from .decoder import decode
from .display import DisplayManager
from .negotiator import ServiceNegotiator
from .recorder import SessionRecorder

__all__ = ["decode", "DisplayManager", "ServiceNegotiator", "SessionRecorder"]
