"""Per-user content visibility exclusion engine."""
