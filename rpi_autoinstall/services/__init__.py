"""Pipeline services: resolve, download, verify, inject, cleanup."""
