"""Database connection, migrations and repositories."""
