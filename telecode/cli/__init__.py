"""CLI module for telecode."""
