"""Outcome checks and the strike verification loop."""
