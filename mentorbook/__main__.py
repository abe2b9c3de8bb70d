"""
Convenience entry point for running mentorbook as a module.

Usage: python -m mentorbook [command] [options]
"""

from .cli.app import app

if __name__ == "__main__":
    app()
