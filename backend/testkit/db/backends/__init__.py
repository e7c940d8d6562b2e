"""Database backends (one module per SQLAlchemy backend name)."""
