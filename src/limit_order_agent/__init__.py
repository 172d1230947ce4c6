"""Synthetic limit-order agent for bonding-curve and DEX token venues."""

__version__ = "0.1.0"
