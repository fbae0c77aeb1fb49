"""CLI entry point and error handling."""
