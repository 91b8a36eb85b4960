"""Read-only HTTP query API."""

from candles.api.app import create_api_app

__all__ = ["create_api_app"]
