"""Reference services backing the sharing core."""
