"""ASGI middleware and shared instrumentation for the appbase API."""
