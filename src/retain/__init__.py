"""Retain: learnings and workflow patterns extracted from AI assistant conversations."""

__version__ = "0.1.0"
