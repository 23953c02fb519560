"""Optional visual output."""
