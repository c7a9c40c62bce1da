"""Derived per-order product statistics cache."""
