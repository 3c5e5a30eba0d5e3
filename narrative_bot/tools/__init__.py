"""Command-line helpers for narrative maintenance."""
