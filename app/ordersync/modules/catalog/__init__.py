"""Product catalog lookup (read-only reference data)."""
