"""Infrastructure clients: Redis, state store, search cache, HTTP capabilities."""
