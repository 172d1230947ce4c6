"""Execution layer - routing, slippage, transaction building and submission."""
