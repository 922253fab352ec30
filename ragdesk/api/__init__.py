"""HTTP and WebSocket surface: routes, schemas, middleware."""
