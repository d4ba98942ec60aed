"""Database schema, sessions and queue storage."""
