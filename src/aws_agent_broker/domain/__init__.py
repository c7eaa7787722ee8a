"""Domain objects shared across the broker."""
