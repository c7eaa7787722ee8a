"""Risk classification and permission elevation."""
