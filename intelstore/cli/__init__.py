"""Command-line interface for intelstore."""
