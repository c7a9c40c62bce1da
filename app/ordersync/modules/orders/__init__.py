"""Order rows, change detection and kit-aware quantity aggregation."""
