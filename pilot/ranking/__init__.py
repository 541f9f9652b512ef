"""Adaptive ranking of methods and models."""
