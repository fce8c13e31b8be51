"""Backend catalog, trust, dispatch and validation for site generation."""
