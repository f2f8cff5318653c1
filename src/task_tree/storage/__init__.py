"""Task store adapters: SQLite (SQLModel + Alembic) and in-memory."""
