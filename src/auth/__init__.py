"""Token validation and persona-based access control."""
