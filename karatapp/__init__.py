"""Karatapp backend services."""

__version__ = "1.0.0"
