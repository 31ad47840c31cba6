"""
Single source of truth for application version.
"""

__version__ = "1.0.0"
__version_info__ = tuple(int(x) for x in __version__.split("."))

VERSION_STRING = f"PrintCloud Device Integration v{__version__}"
