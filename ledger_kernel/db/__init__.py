"""Database infrastructure: declarative base, engine/session helpers, column types."""
