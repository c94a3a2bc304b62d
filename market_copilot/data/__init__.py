"""Data model and wire bodies."""
