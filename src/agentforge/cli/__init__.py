"""Command-line interface for agentforge."""
