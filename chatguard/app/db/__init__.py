"""Database layer for the SQL-backed message store."""
