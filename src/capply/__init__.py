"""Command-line interface for crate-apply."""
