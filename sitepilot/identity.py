"""SitePilot identity constants."""

__codename__ = "SITEPILOT"
__tagline__ = "Research. Build. Publish. Repeat."
__version__ = "0.4.0"

BANNER = r"""
  ___ _ _       ___ _ _     _
 / __(_) |_ ___| _ (_) |___| |_
 \__ \ | _/ -_)  _/ | / _ \  _|
 |___/_|\__\___|_| |_|_\___/\__|
"""
