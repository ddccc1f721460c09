"""Backend services: resource lifecycle, catalog, downloads and persistence."""
