"""
Rendering surfaces (Playwright pages grouped in browser contexts) and the
page-embedded agent that runs actions inside them.
"""

from .agent import PageAgent
from .surfaces import PlaywrightSurfaceController

__all__ = ["PageAgent", "PlaywrightSurfaceController"]
