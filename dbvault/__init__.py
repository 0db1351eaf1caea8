"""dbvault - secure scheduled database backups"""

__version__ = "0.1.0"
