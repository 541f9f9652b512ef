"""Action dispatch and the execution engine."""
