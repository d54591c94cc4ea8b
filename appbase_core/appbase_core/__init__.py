"""Persistence layer and pure domain logic for the appbase platform."""

__version__ = "0.1.0"
