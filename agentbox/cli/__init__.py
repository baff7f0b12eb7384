"""Command-line interface for agentbox."""
