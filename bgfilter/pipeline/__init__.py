"""
Pipeline module - per-frame coordination of inference and compositing.
"""

from .coordinator import BackgroundFilter
