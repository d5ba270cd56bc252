"""Business health integration sync and scoring backend."""
