"""SQLite storage primitives for the checkpoint store."""
