"""HTTP API for the leasing payment engine."""

from motolease.api.app import create_app

__all__ = ["create_app"]
