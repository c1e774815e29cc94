"""Command line tools for the sharing core."""
