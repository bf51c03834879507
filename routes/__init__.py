"""HTTP routes for the resolver server."""
