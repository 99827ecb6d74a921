"""Cyber Quiz Live - real-time quiz backend"""

__version__ = "1.2.0"
