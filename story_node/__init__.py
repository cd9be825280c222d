"""Interactive installer and lifecycle tool for a Story validator node"""

__version__ = "1.0.0"
