"""
Exception hierarchy for the launch agent.

Each pipeline step raises its own error type so the executor can report
which step failed; everything derives from LaunchAgentError.
"""


class LaunchAgentError(Exception):
    """Base class for all agent errors."""
    pass


class ConfigError(LaunchAgentError):
    """Raised when the configuration file is missing or invalid."""
    pass


class DumpError(LaunchAgentError):
    """Raised when a database dump fails."""
    pass


class ArchiveError(LaunchAgentError):
    """Raised when the file archive step fails."""
    pass


class CompressionError(LaunchAgentError):
    """Raised when artifact creation fails."""
    pass


class StorageError(LaunchAgentError):
    """Raised when a storage operation fails."""
    pass


class NotifierError(LaunchAgentError):
    """Raised when a webhook notification cannot be delivered."""
    pass


class MonitoringError(LaunchAgentError):
    """Raised when system stats or supervisor status cannot be collected."""
    pass
