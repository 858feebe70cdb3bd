"""Texture decode, downsample, alpha scan, channel inversion and compression.

ImageProcessor.process_image() turns one image source into a
ProcessedImage ready for the renderer:

    1. Cache lookup (file sources only): header + payload, no decoding.
    2. Decode to 8-bit RGBA with Pillow.
    3. Box-downsample by an integer factor when larger than max_dim.
       Remainder rows/columns that do not fill a whole block are dropped.
    4. Alpha range scan (ImageProcess.TRACK_ALPHA).
    5. Blue channel inversion (ImageProcess.FLIP_NORMAL_Z).
    6. BC3 compression, optionally with a mip chain (ImageProcess.GEN_MIPS).
    7. Cache write.

Sources:
    str / os.PathLike          image file on disk (cacheable)
    bytes-like                 embedded encoded image (PNG, JPEG, ...)
    bytes-like + raw_size      raw RGBA8 pixels, (width, height)
"""

import enum
import io
import logging
import os
import threading

import numpy as np
from PIL import Image, UnidentifiedImageError

from ..errors import ConfigurationError, DecodeError, MissingFileError
from ..settings import DEFAULT_CACHE_DIR, DEFAULT_MAX_TEXTURE_DIM, debug_enabled
from ..utils.dxt_compress import (
    compress_rgba_to_dxt5, compress_with_mipmaps, generate_mipmaps, mip_level_count,
)
from .image_cache import CacheHeader, TextureCache, cache_key, path_lock


_log = logging.getLogger("scenebake.images")

EMBEDDED_SOURCE = "$embedded"
RAW_SOURCE = "$raw"


class ImageProcess(enum.IntFlag):
    """Optional processing steps; part of the cache key."""

    NONE = 0
    FLIP_NORMAL_Z = 1 << 0
    GEN_MIPS = 1 << 1
    TRACK_ALPHA = 1 << 2


class TextureFormat(enum.IntEnum):
    """Payload format tags (DXGI_FORMAT values)."""

    RGBA8_UNORM = 28
    BC3_UNORM = 77


class ProcessedImage:
    """Result of one process_image() call."""

    __slots__ = (
        'width', 'height', 'format', 'data',
        'min_alpha', 'max_alpha', 'mip_levels', 'from_cache',
    )

    def __init__(self, width, height, format, data,
                 min_alpha=1.0, max_alpha=0.0, mip_levels=1, from_cache=False):
        self.width = width
        self.height = height
        self.format = format
        self.data = data
        self.min_alpha = min_alpha
        self.max_alpha = max_alpha
        self.mip_levels = mip_levels
        self.from_cache = from_cache

    def __repr__(self):
        return (f"ProcessedImage({self.width}x{self.height}, {self.format.name}, "
                f"{len(self.data)} bytes, alpha=[{self.min_alpha:.3f}, {self.max_alpha:.3f}])")


# ---------------------------------------------------------------------------
# Pixel operations
# ---------------------------------------------------------------------------

def downsample_to_fit(pixels, max_dim):
    """Box-downsample (H, W, 4) uint8 pixels by an integer factor.

    factor = max(W // max_dim, H // max_dim); each output pixel is the
    floored mean of its factor x factor source block. Source pixels past the
    last whole block are dropped.
    """
    height, width = pixels.shape[:2]
    if width <= max_dim and height <= max_dim:
        return pixels

    factor = max(width // max_dim, height // max_dim)
    if factor <= 1:
        return pixels

    new_w = width // factor
    new_h = height // factor
    blocks = pixels[:new_h * factor, :new_w * factor].reshape(
        new_h, factor, new_w, factor, 4).astype(np.uint32)
    return (blocks.sum(axis=(1, 3)) // (factor * factor)).astype(np.uint8)


def alpha_range(pixels):
    """(min, max) alpha of (H, W, 4) pixels in [0, 1], rounded to float32."""
    alpha = pixels[:, :, 3]
    lo = np.float32(int(alpha.min()) / 255.0)
    hi = np.float32(int(alpha.max()) / 255.0)
    return float(lo), float(hi)


def encode_pixels(pixels, compress, gen_mips):
    """Encode pixels into a payload.

    Returns:
        (payload bytes, TextureFormat, mip level count)
    """
    height, width = pixels.shape[:2]
    if compress:
        if gen_mips:
            levels = compress_with_mipmaps(pixels, width, height)
            return b''.join(level[0] for level in levels), TextureFormat.BC3_UNORM, len(levels)
        return compress_rgba_to_dxt5(pixels, width, height), TextureFormat.BC3_UNORM, 1

    payload = [np.ascontiguousarray(pixels).tobytes()]
    if gen_mips:
        payload.extend(np.ascontiguousarray(level[0]).tobytes()
                       for level in generate_mipmaps(pixels, width, height))
    return b''.join(payload), TextureFormat.RGBA8_UNORM, len(payload)


# ---------------------------------------------------------------------------
# Processor
# ---------------------------------------------------------------------------

class ImageProcessor:
    """Decodes and compresses images, backed by a content-addressed disk cache.

    One lock guards each instance; calls are synchronous. Separate instances
    (one per worker thread) may share a cache directory.

    Attributes:
        cache: TextureCache for file-backed sources
        decode_count: number of images decoded by this instance
        cache_hits: number of images served from the cache
    """

    def __init__(self, cache_dir=DEFAULT_CACHE_DIR):
        self.cache = TextureCache(cache_dir, formats=TextureFormat)
        self.decode_count = 0
        self.cache_hits = 0
        self._lock = threading.Lock()

    def process_image(self, source, max_dim=DEFAULT_MAX_TEXTURE_DIM,
                      processes=ImageProcess.TRACK_ALPHA, compress=True,
                      use_cache=True, raw_size=None):
        """Process one image.

        Args:
            source: file path, embedded image bytes, or raw RGBA8 bytes
            max_dim: largest allowed dimension before downsampling
            processes: ImageProcess flags
            compress: BC3-compress the payload (else raw RGBA8)
            use_cache: read/write the disk cache (file sources only)
            raw_size: (width, height) when `source` holds raw RGBA8 pixels

        Returns:
            ProcessedImage

        Raises:
            ConfigurationError: caching requested for an in-memory source,
                or max_dim < 1
            MissingFileError: the source file does not exist
            DecodeError: the source bytes are not a decodable image
        """
        if max_dim < 1:
            raise ConfigurationError(f"max_dim must be positive, got {max_dim}")
        processes = ImageProcess(processes)

        is_file = isinstance(source, (str, os.PathLike))
        if use_cache and not is_file:
            raise ConfigurationError("Embedded image sources cannot be cached")

        with self._lock:
            if not is_file:
                return self._generate(source, max_dim, processes, compress, raw_size)

            path = os.fspath(source)
            if not os.path.isfile(path):
                raise MissingFileError(path)
            path = os.path.realpath(path)

            if not use_cache:
                return self._generate(path, max_dim, processes, compress, None)

            cache_path = self.cache.path_for(cache_key(path, processes, max_dim, compress))
            with path_lock(cache_path):
                cached = self._read_cache(cache_path, processes)
                if cached is not None:
                    return cached
                image = self._generate(path, max_dim, processes, compress, None)
                self._write_cache(cache_path, image)
                return image

    def _read_cache(self, cache_path, processes):
        entry = self.cache.read(cache_path)
        if entry is None:
            return None
        header, payload = entry
        self.cache_hits += 1
        if debug_enabled():
            _log.debug("Image cache hit: %s", cache_path)

        mip_levels = 1
        if processes & ImageProcess.GEN_MIPS:
            mip_levels = mip_level_count(header.width, header.height)
        return ProcessedImage(
            header.width, header.height, TextureFormat(header.format), payload,
            header.min_alpha, header.max_alpha, mip_levels, from_cache=True,
        )

    def _write_cache(self, cache_path, image):
        header = CacheHeader(
            image.width, image.height, image.format,
            image.min_alpha, image.max_alpha, len(image.data),
        )
        self.cache.write(cache_path, header, image.data)

    def _generate(self, source, max_dim, processes, compress, raw_size):
        identity = _source_name(source, raw_size)
        _log.info("Image[%s] not cached, generating...", identity)

        pixels = self._decode(source, raw_size)
        src_h, src_w = pixels.shape[:2]
        pixels = downsample_to_fit(pixels, max_dim)
        height, width = pixels.shape[:2]
        if debug_enabled() and (width, height) != (src_w, src_h):
            _log.debug("Image[%s] downsampled %dx%d -> %dx%d",
                       identity, src_w, src_h, width, height)

        min_alpha, max_alpha = 1.0, 0.0
        if processes & ImageProcess.TRACK_ALPHA:
            min_alpha, max_alpha = alpha_range(pixels)

        if processes & ImageProcess.FLIP_NORMAL_Z:
            pixels = pixels.copy()
            pixels[:, :, 2] = 255 - pixels[:, :, 2]

        data, fmt, mip_levels = encode_pixels(
            pixels, compress, bool(processes & ImageProcess.GEN_MIPS))
        return ProcessedImage(width, height, fmt, data, min_alpha, max_alpha, mip_levels)

    def _decode(self, source, raw_size):
        """Decode `source` to a (H, W, 4) uint8 array."""
        identity = _source_name(source, raw_size)
        self.decode_count += 1

        if raw_size is not None:
            width, height = raw_size
            expected = width * height * 4
            if width < 1 or height < 1 or len(source) != expected:
                raise DecodeError(
                    identity,
                    f"raw RGBA8 buffer holds {len(source)} bytes, expected {expected} "
                    f"for {width}x{height}")
            return np.frombuffer(bytes(source), dtype=np.uint8).reshape(height, width, 4)

        try:
            if isinstance(source, str):
                image = Image.open(source)
            else:
                image = Image.open(io.BytesIO(bytes(source)))
            with image:
                image.load()
                rgba = image.convert("RGBA")
        except FileNotFoundError:
            raise MissingFileError(identity) from None
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError,
                ValueError, SyntaxError) as e:
            raise DecodeError(identity, str(e)) from e

        return np.array(rgba, dtype=np.uint8)


def _source_name(source, raw_size):
    if isinstance(source, (str, os.PathLike)):
        return os.fspath(source)
    return RAW_SOURCE if raw_size is not None else EMBEDDED_SOURCE
