"""Request classification and clarification."""
