"""
Custom exception hierarchy for opscheck.
"""

class OpsCheckError(Exception):
    """Base exception for all opscheck errors."""
    pass

class ConfigError(OpsCheckError):
    pass

class QueryError(OpsCheckError):
    """A host subsystem could not be queried."""
    pass

class CommandNotFoundError(QueryError):
    pass

class DockerError(QueryError):
    pass

class BackupError(OpsCheckError):
    """Fatal backup failure. Nothing is left on disk without its checksum."""
    pass

class DestinationError(BackupError):
    pass

class ArchiveError(BackupError):
    pass

class BackupLockedError(BackupError):
    pass

class CleanupError(OpsCheckError):
    pass
