"""SitePilot: an autopilot for research-driven content sites."""

from sitepilot.identity import __version__

__all__ = ["__version__"]
