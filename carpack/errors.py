class CarpackError(Exception):
    """Base class for carpack-specific errors."""


class ConfigurationError(CarpackError):
    """Invalid run options (size limit, parallelism, ...)."""


class StorageIOError(CarpackError):
    """A directory or file could not be created, read or written."""


# Raw manifest
class ManifestError(CarpackError):
    pass


class ManifestFormatError(ManifestError):
    """A manifest row has fewer fields than the fixed layout requires."""


class ManifestParseError(ManifestError):
    """The trailing JSON detail of a manifest row could not be decoded."""

    def __init__(self, message: str, fragment: str = ""):
        super().__init__(message)
        self.fragment = fragment


class ChecksumError(CarpackError):
    pass


# Slicing / archive format
class SliceError(CarpackError):
    pass


class CarFormatError(CarpackError):
    pass


class BlockNotFoundError(CarFormatError):
    pass


# Restore
class MergeError(CarpackError):
    """Split file pieces do not cover the whole file."""
