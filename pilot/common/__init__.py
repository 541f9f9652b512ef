"""Shared protocol, configuration, errors and outbound plumbing."""
