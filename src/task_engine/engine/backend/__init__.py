"""Built-in capability providers."""
