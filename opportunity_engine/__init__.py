"""Opportunity Report Engine - convergent multi-agent business report pipeline."""

__version__ = "1.0.0"
