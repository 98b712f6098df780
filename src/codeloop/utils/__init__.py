"""Utility helpers shared across codeloop."""
