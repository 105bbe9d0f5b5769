"""Exception taxonomy for the image updater."""


class ImageUpdaterError(Exception):
    """Base class for every error raised by the updater."""


class ConfigError(ImageUpdaterError):
    """Required configuration is missing or invalid."""


class SyncError(ImageUpdaterError):
    """Clone, fetch or hard reset of the manifest repository failed."""


class ParseError(ImageUpdaterError):
    """A manifest file could not be read or parsed as YAML."""


class RegistryError(ImageUpdaterError):
    """Listing tags from the container registry failed."""


class NoMatchingTagError(RegistryError):
    """No registry tag matched the candidate's allow-tags pattern."""


class PatchError(ImageUpdaterError):
    """An override file could not be loaded or written."""


class PushError(ImageUpdaterError):
    """Committing or pushing the manifest repository failed."""
