"""SQLite storage primitives shared by the state store."""
