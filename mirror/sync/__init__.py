"""Mirror loops: reorg detection and scheduling."""
