"""
Defines the package's version string.

This is the single source of truth for the version number. It is read by
the packaging metadata and printed by the command-line entry point.
"""

__version__ = "0.4.0"
