"""Locked intents and per-action validation."""
