"""Version information for ReplayCam."""

APP_VERSION = "0.4.0"

__all__ = ["APP_VERSION"]
