"""Task hierarchy and dependency engine."""
