"""Request-time access classification."""
