"""
kb - KB Labs command line front end.

See kb.cli for usage.
"""

from kblabs import __version__

__all__ = ["__version__"]
