"""Exception types raised by the scene compilation pipeline.

Recoverability depends on where an error is caught:

    DecodeError / MissingFileError:
        Fatal inside the ImageProcessor. The SceneCompiler catches them per
        texture, logs a warning and substitutes the channel default.
    ConfigurationError:
        Always fatal (e.g. caching requested for an embedded image).
    BoundsError:
        Always fatal. Signals an upstream parser defect (an index past the
        end of its container, or a malformed index list).
"""


class SceneBakeError(Exception):
    """Base class for every error raised by scenebake."""


class DecodeError(SceneBakeError):
    """Image bytes could not be decoded.

    Attributes:
        source: identifier of the offending image (path or '$embedded')
    """

    def __init__(self, source, reason=""):
        self.source = source
        self.reason = reason
        message = f"Cannot decode image '{source}'"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class MissingFileError(SceneBakeError, FileNotFoundError):
    """A referenced image file does not exist."""

    def __init__(self, source):
        self.source = source
        super().__init__(f"Cannot find file: {source}")


class ConfigurationError(SceneBakeError, ValueError):
    """Invalid processing parameters or settings."""


class BoundsError(SceneBakeError, IndexError):
    """Index past the declared element count of a region or container."""
