"""Utility helpers for the semantic memory engine."""
