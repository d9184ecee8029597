"""Cai: focus-time calendar scheduler."""

__version__ = "0.1.0"
