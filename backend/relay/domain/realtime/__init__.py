"""Connection registry, presence and the socket transport."""
