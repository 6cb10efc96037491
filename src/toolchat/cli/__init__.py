"""Command-line interface for toolchat."""
