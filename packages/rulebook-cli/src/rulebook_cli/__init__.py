"""Rulebook CLI."""
