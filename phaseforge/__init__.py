"""PHASEFORGE — phase-by-phase automated change execution."""

__version__ = "0.4.0"
