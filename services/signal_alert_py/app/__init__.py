"""HTTP layer for the signal alert service."""
