"""Compile settings for the scene compiler.

Settings are a plain dataclass so callers can construct them directly.
CompileSettings.from_env() layers environment overrides on top, which is
how batch jobs point every compile at a shared cache directory:

    SCENEBAKE_CACHE_DIR        directory for processed texture cache files
    SCENEBAKE_MAX_TEXTURE_DIM  largest texture dimension before downsampling
    SCENEBAKE_WORKERS          worker threads for texture/mesh processing
    SCENEBAKE_NO_CACHE         "1" disables the texture disk cache
    SCENEBAKE_DEBUG            "1" enables per-item debug logging
"""

import os
from dataclasses import dataclass, replace
from typing import Optional

from .errors import ConfigurationError


DEFAULT_MAX_TEXTURE_DIM = 4096
DEFAULT_CACHE_DIR = "cache"


def debug_enabled():
    """Whether verbose per-item logging was requested via SCENEBAKE_DEBUG=1."""
    return os.environ.get('SCENEBAKE_DEBUG', '') == '1'


@dataclass
class CompileSettings:
    """Parameters shared by every stage of one compile call."""

    # Textures larger than this (in either dimension) are box-downsampled
    # by an integer factor.
    max_texture_dim: int = DEFAULT_MAX_TEXTURE_DIM

    # Apply v = 1.0 - v to texture coordinates (DirectX <-> OpenGL).
    flip_uvs: bool = False

    # Invert the blue channel of textures used as normal maps.
    flip_normal_map_z: bool = False

    # BC3 block compression. False keeps uncompressed RGBA8 payloads.
    compress_textures: bool = True

    # Append a 2x box-filtered mip chain to each processed texture.
    generate_mips: bool = False

    # Content-addressed disk cache for file-backed textures.
    use_cache: bool = True
    cache_dir: str = DEFAULT_CACHE_DIR

    # None lets ThreadPoolExecutor pick its default.
    max_workers: Optional[int] = None

    def __post_init__(self):
        self.validate()

    def validate(self):
        """Raise ConfigurationError on values no stage can work with."""
        if not isinstance(self.max_texture_dim, int) or self.max_texture_dim < 1:
            raise ConfigurationError(
                f"max_texture_dim must be a positive integer, got {self.max_texture_dim!r}")
        if self.max_workers is not None and (
                not isinstance(self.max_workers, int) or self.max_workers < 1):
            raise ConfigurationError(
                f"max_workers must be None or a positive integer, got {self.max_workers!r}")
        if self.use_cache and not self.cache_dir:
            raise ConfigurationError("use_cache requires a cache_dir")

    @classmethod
    def from_env(cls, base=None, environ=None):
        """Build settings from `base` (or defaults) plus SCENEBAKE_* overrides.

        Args:
            base: CompileSettings to start from (default: CompileSettings())
            environ: mapping to read instead of os.environ

        Returns:
            CompileSettings instance

        Raises:
            ConfigurationError: if an override cannot be parsed
        """
        env = os.environ if environ is None else environ
        settings = base if base is not None else cls()
        overrides = {}

        cache_dir = env.get('SCENEBAKE_CACHE_DIR')
        if cache_dir:
            overrides['cache_dir'] = cache_dir

        max_dim = env.get('SCENEBAKE_MAX_TEXTURE_DIM')
        if max_dim:
            overrides['max_texture_dim'] = _parse_int('SCENEBAKE_MAX_TEXTURE_DIM', max_dim)

        workers = env.get('SCENEBAKE_WORKERS')
        if workers:
            overrides['max_workers'] = _parse_int('SCENEBAKE_WORKERS', workers)

        if env.get('SCENEBAKE_NO_CACHE', '') == '1':
            overrides['use_cache'] = False

        return replace(settings, **overrides)


def _parse_int(name, text):
    try:
        return int(text)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {text!r}") from None
