"""Small framework helpers shared by the HTTP layer."""
