"""pytest integration for the harness."""
