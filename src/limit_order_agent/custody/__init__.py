"""Agent wallet custody."""
