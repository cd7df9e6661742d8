"""
Leadrunner - browser automation orchestrator for lead outreach.
"""

__version__ = "1.0.0"
