"""
Crew Dashboard Service
Multi-feed live-event dashboard engine: live/recorded disambiguation,
per-feed polling state machines and producer-controlled break mode.
"""

__version__ = "0.3.2"
__description__ = "Live-event crew dashboard with live detection and break mode"
