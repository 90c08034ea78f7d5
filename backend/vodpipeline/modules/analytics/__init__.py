"""View analytics: per-user daily view records and aggregation."""
