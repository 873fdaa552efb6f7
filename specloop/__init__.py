"""
specloop — dependency-ordered task orchestration with bounded refinement loops.
"""

from specloop.identity import __version__

__all__ = ["__version__"]
