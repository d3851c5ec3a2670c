"""
opscheck: host health checks, configuration backups and Docker cleanup.
"""
__version__ = "1.0.0"
