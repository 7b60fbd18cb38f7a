"""Database models, session management and repositories."""
