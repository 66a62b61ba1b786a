"""Project-level exception hierarchy."""


class HookrelayError(Exception):
    """Base for all hookrelay exceptions."""


class ConfigError(HookrelayError):
    """Configuration could not be loaded or validated."""


class StorageError(HookrelayError):
    """Webhook persistence failed."""


class SecurityError(HookrelayError):
    """Security violation detected."""


class InvalidIdError(SecurityError):
    """An ID contains characters that are unsafe in filesystem paths."""


class WatcherError(HookrelayError):
    """Filesystem event watching failed."""
