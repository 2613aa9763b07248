"""Application version string shared by the API and CLI."""

APP_VERSION = "0.3.0"

__all__ = ["APP_VERSION"]
