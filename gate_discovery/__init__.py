# =======================================================================================
# gate_discovery/__init__.py - Package Initialization
# =======================================================================================
"""
Autonomous Gate Discovery & Enforcement Engine

Turns location-tagged wristband scans into a self-maintaining map of venue
gates, each bound to the attendee categories it admits, with an auditable
decision trail.
"""

__version__ = "1.0.0"
__author__ = "Gate Discovery Team"
