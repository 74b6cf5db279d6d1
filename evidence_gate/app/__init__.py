"""ASGI application package."""
