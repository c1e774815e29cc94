"""HTTP API of the reference remote authority."""
