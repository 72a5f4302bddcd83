"""Command-line interface for aipal."""
