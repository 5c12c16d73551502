"""Command-line interface for SupportBot."""
