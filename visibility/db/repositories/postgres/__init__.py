"""PostgreSQL repository implementations."""
