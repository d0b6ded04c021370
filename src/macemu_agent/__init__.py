"""Automation client and test harness for BasiliskII."""

__version__ = "0.1.0"
