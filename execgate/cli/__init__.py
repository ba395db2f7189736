"""CLI module for execgate."""
