"""Shared infrastructure: command execution, configuration loading and console output."""
