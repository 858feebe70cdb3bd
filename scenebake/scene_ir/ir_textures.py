"""IR texture data sources.

A parser describes each texture by where its pixels come from:

    ImageFileURI      path of an image file on disk
    ImageFileBuffer   an encoded image file embedded in the source asset
    ImageBuffer       already-decoded pixels (RGBA8 only)
"""

import enum
import os
from dataclasses import dataclass


class BufferFormat(enum.Enum):
    RGBA8 = "rgba8"


@dataclass(frozen=True)
class ImageFileURI:
    uri: str

    @property
    def base_name(self):
        """Get just the filename without path."""
        return os.path.basename(self.uri.replace("\\", "/"))


@dataclass(frozen=True)
class ImageFileBuffer:
    data: bytes

    @property
    def magic(self):
        """First four bytes, for diagnostics."""
        return bytes(self.data[:4])


@dataclass(frozen=True)
class ImageBuffer:
    data: bytes
    width: int
    height: int
    format: BufferFormat = BufferFormat.RGBA8


@dataclass
class Texture:
    """One IR texture: a tagged data source."""

    source: object

    def __post_init__(self):
        if isinstance(self.source, (str, os.PathLike)):
            self.source = ImageFileURI(os.fspath(self.source))
        if not isinstance(self.source, (ImageFileURI, ImageFileBuffer, ImageBuffer)):
            raise TypeError(f"Unsupported texture source: {type(self.source).__name__}")

    @property
    def is_file(self):
        return isinstance(self.source, ImageFileURI)

    def describe(self):
        """Short human-readable description used in logs."""
        src = self.source
        if isinstance(src, ImageFileURI):
            return f"File[{src.uri}]"
        if isinstance(src, ImageFileBuffer):
            return f"InlineFile[magic = {src.magic!r}, size = {len(src.data)}]"
        return f"Raw[size = ({src.width}, {src.height}), format = {src.format.name}]"
