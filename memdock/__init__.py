"""
memdock - offline-first memory retrieval and sync for coding agents.
"""

try:
    from importlib.metadata import version as _get_version
    __version__ = _get_version("memdock")
except Exception:
    # Fallback for development or if package not installed
    __version__ = "0.1.0"
