"""Authentication and authorization for Rallypoint."""
