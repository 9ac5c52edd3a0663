"""Last Round cup service."""
