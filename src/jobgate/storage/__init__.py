"""SQLite persistence helpers, ORM tables and migrations runner."""
