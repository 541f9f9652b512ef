"""Delegated task pipeline: intake, guarded execution, verification and fallbacks."""
