"""Database package: SQLAlchemy models and async session management."""
