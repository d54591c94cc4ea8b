"""appbase HTTP service: tenant-scoped end-user sessions and billing."""

__version__ = "0.1.0"
