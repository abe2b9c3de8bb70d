"""
mentorbook - scheduling and credit engine for a mentorship platform.
"""

__version__ = "0.1.0"
