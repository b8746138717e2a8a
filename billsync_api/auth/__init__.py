"""Session credentials and request authentication."""
