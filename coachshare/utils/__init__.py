"""Utility helpers for the sharing core."""
