"""Command-line interface for the Box migration tool."""
