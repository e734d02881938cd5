"""Real-time performance monitor for a single Linux host."""
