"""Application entry point and bootstrap."""
