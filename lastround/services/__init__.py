"""Services for the Last Round cup."""
