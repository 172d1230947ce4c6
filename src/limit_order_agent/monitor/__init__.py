"""Monitoring layer - state snapshots, trigger evaluation and the scheduler loop."""
