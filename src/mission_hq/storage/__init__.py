"""SQLite persistence: ORM tables, engine helpers and migrations."""
