"""Content-addressed disk cache for processed textures.

Each processed texture is stored as one file:

    offset  type  field
    0       u32   width
    4       u32   height
    8       u32   format tag (TextureFormat)
    12      f32   min alpha
    16      f32   max alpha
    20      u32   payload size
    24      ...   payload (compressed pixel data, all mip levels)

The file name is derived only from the source path and the processing
parameters. Existence of the file is the hit test: there is no checksum and
no source modification-time check.

Writes go to a temporary file in the cache directory that is then renamed
over the final name. A process-wide lock, picked from a fixed set by hashing
the cache path, serializes the check/read/generate/write sequence, so
concurrent processors never observe a partially written file.
"""

import hashlib
import logging
import os
import struct
import tempfile
import threading
import zlib


_log = logging.getLogger("scenebake.cache")

HEADER_FORMAT = '<IIIffI'
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)

CACHE_EXTENSION = '.tex'

# Distinct paths may share a lock; holders never take a second one
PATH_LOCK_COUNT = 64
_path_locks = tuple(threading.Lock() for _ in range(PATH_LOCK_COUNT))


def cache_key(path, processes, max_dim, compress):
    """Deterministic cache key for one (source, parameters) combination."""
    descriptor = f"{path}${int(processes)}${int(max_dim)}${int(bool(compress))}"
    return hashlib.sha1(descriptor.encode('utf-8')).hexdigest()


def path_lock(cache_path):
    """Process-wide lock guarding one cache file path."""
    key = os.path.abspath(cache_path).encode("utf-8", "surrogateescape")
    return _path_locks[zlib.crc32(key) % PATH_LOCK_COUNT]


class CacheHeader:
    """Fixed 24-byte header in front of every cache payload."""

    __slots__ = ('width', 'height', 'format', 'min_alpha', 'max_alpha', 'size')

    def __init__(self, width=0, height=0, format=0, min_alpha=1.0, max_alpha=0.0, size=0):
        self.width = width
        self.height = height
        self.format = format
        self.min_alpha = min_alpha
        self.max_alpha = max_alpha
        self.size = size

    def pack(self):
        return struct.pack(
            HEADER_FORMAT,
            self.width, self.height, int(self.format),
            self.min_alpha, self.max_alpha, self.size,
        )

    @classmethod
    def unpack(cls, data):
        """Parse a header from the first HEADER_SIZE bytes of `data`.

        Raises:
            ValueError: if `data` is shorter than the header
        """
        if len(data) < HEADER_SIZE:
            raise ValueError(f"Cache header too small: {len(data)} bytes")
        return cls(*struct.unpack_from(HEADER_FORMAT, data, 0))


class TextureCache:
    """Reads and writes processed textures under one cache directory.

    Args:
        cache_dir: directory holding the cache files
        formats: format tags a usable entry may carry, or None to accept any
    """

    def __init__(self, cache_dir, formats=None):
        self.cache_dir = cache_dir
        self.formats = None if formats is None else frozenset(int(f) for f in formats)

    def path_for(self, key):
        return os.path.join(self.cache_dir, key + CACHE_EXTENSION)

    def read(self, cache_path):
        """Load a cache entry.

        Returns:
            (CacheHeader, payload bytes), or None when the file does not
            exist or is unusable (logged, then treated as a miss)
        """
        if not os.path.exists(cache_path):
            return None

        with open(cache_path, 'rb') as f:
            data = f.read()

        try:
            header = CacheHeader.unpack(data)
        except ValueError as e:
            _log.warning("Ignoring cache file %s: %s", cache_path, e)
            return None

        if self.formats is not None and header.format not in self.formats:
            _log.warning("Ignoring cache file %s: unknown format tag %d",
                         cache_path, header.format)
            return None

        payload = data[HEADER_SIZE:HEADER_SIZE + header.size]
        if len(payload) != header.size:
            _log.warning("Ignoring truncated cache file %s (%d of %d payload bytes)",
                         cache_path, len(payload), header.size)
            return None
        return header, payload

    def write(self, cache_path, header, payload):
        """Atomically write header + payload to `cache_path`."""
        directory = os.path.dirname(cache_path) or '.'
        os.makedirs(directory, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(prefix='.tmp-', suffix=CACHE_EXTENSION, dir=directory)
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(header.pack())
                f.write(payload)
            os.replace(tmp_path, cache_path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
