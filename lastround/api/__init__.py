"""HTTP API for the Last Round cup."""
