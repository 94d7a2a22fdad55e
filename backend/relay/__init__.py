"""Real-time messaging and presence relay."""
