"""SQLite storage helpers for the attempt journal."""
