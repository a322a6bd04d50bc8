"""Strive API - streaming chat proxy for the Strive productivity app."""

__version__ = "0.1.0"
