"""
Module Update Manager
Keeps locally installed PowerShell-style modules current across every search root.
"""

__version__ = "1.0.0"
