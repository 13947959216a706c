"""Command-line tools for tpmcomm."""
