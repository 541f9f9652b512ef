"""Execution planning and action generation."""
