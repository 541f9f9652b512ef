"""Fallback tiers for tasks whose actions mostly failed."""
