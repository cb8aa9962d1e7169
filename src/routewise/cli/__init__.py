"""Command-line interface for Routewise."""
