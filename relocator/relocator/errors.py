class ConfigError(ValueError):
    """Raised when service or profile configuration is invalid."""


class ProfileNotLoadedError(RuntimeError):
    """Raised when a relocation is requested on an unloaded profile."""


class EngineLoadError(RuntimeError):
    """Raised when the relocation engine factory cannot be resolved."""
