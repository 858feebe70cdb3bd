"""BC3 (DXT5) texture compression, decompression and mipmap generation.

Compresses RGBA8888 pixel data to BC3, the block-compressed format the
image processor targets. Blocks are encoded all at once with numpy; the
per-block algorithm is the classic min/max endpoint fit:

DXT5 block structure (16 bytes per 4x4 pixel block):
    Bytes 0-1:  Two 8-bit alpha endpoints (alpha0, alpha1)
    Bytes 2-7:  4x4 3-bit alpha index table (48 bits = 6 bytes)
    Bytes 8-9:  RGB565 color endpoint 0
    Bytes 10-11: RGB565 color endpoint 1
    Bytes 12-15: 4x4 2-bit color index table

Images whose dimensions are not multiples of 4 are padded by clamping to
the nearest edge pixel.
"""

import struct

import numpy as np


BLOCK_BYTES = 16

_BLOCK_DTYPE = np.dtype([
    ('alpha0', 'u1'),
    ('alpha1', 'u1'),
    ('alpha_bits', 'u1', (6,)),
    ('color0', '<u2'),
    ('color1', '<u2'),
    ('color_bits', '<u4'),
])


def compressed_size(width, height):
    """Size in bytes of one BC3-compressed image level."""
    return max(1, (width + 3) // 4) * max(1, (height + 3) // 4) * BLOCK_BYTES


def compress_rgba_to_dxt5(rgba_data, width, height):
    """Compress RGBA8888 pixel data to DXT5 format.

    Args:
        rgba_data: (height, width, 4) uint8 array, or bytes of
            width*height*4 RGBA pixels (row-major)
        width: image width in pixels
        height: image height in pixels

    Returns:
        bytes of DXT5-compressed data, blocks in row-major block order
    """
    blocks = _extract_blocks(_as_pixels(rgba_data, width, height))

    out = np.zeros(blocks.shape[0], dtype=_BLOCK_DTYPE)
    _compress_alpha(blocks[:, :, 3].astype(np.int32), out)
    _compress_color(blocks[:, :, :3].astype(np.int32), out)
    return out.tobytes()


def generate_mipmaps(rgba_data, width, height, min_size=1):
    """Generate a mipmap chain from RGBA8888 data.

    Uses box-filter (2x2 averaging) to create each successive level.
    Generates levels until both dimensions reach min_size.

    Returns:
        list of (pixels, width, height) tuples for each mipmap level,
        starting from the next level down (does NOT include the base image)
    """
    mipmaps = []
    current = _as_pixels(rgba_data, width, height)
    current_w = width
    current_h = height

    while current_w > min_size or current_h > min_size:
        new_w = max(min_size, current_w // 2)
        new_h = max(min_size, current_h // 2)
        current = _downsample_2x(current, new_w, new_h)
        mipmaps.append((current, new_w, new_h))
        current_w = new_w
        current_h = new_h

    return mipmaps


def compress_with_mipmaps(rgba_data, width, height):
    """Compress the base image plus every mipmap level as DXT5.

    Returns:
        list of (compressed_data, width, height) tuples.
        First entry is the base image, followed by mipmap levels.
    """
    result = [(compress_rgba_to_dxt5(rgba_data, width, height), width, height)]
    for mip_data, mip_w, mip_h in generate_mipmaps(rgba_data, width, height):
        result.append((compress_rgba_to_dxt5(mip_data, mip_w, mip_h), mip_w, mip_h))
    return result


def mip_level_count(width, height):
    """Number of levels in a full chain down to 1x1, base level included."""
    return max(width, height, 1).bit_length()


def decompress_dxt5(data, width, height):
    """Decompress one DXT5 image level to a (height, width, 4) uint8 array.

    Raises:
        ValueError: if `data` is shorter than the level requires
    """
    blocks_x = max(1, (width + 3) // 4)
    blocks_y = max(1, (height + 3) // 4)
    expected = blocks_x * blocks_y * BLOCK_BYTES
    if len(data) < expected:
        raise ValueError(f"DXT5 data too short: {len(data)} < {expected}")

    output = np.zeros((blocks_y * 4, blocks_x * 4, 4), dtype=np.uint8)
    for by in range(blocks_y):
        for bx in range(blocks_x):
            offset = (by * blocks_x + bx) * BLOCK_BYTES
            pixels = decode_dxt5_block(data, offset)
            output[by * 4:by * 4 + 4, bx * 4:bx * 4 + 4] = \
                np.asarray(pixels, dtype=np.uint8).reshape(4, 4, 4)
    return output[:height, :width]


def decode_dxt5_block(data, offset=0):
    """Decode a single DXT5 4x4 pixel block (16 bytes) to 16 RGBA pixels.

    Returns:
        list of 16 tuples (R, G, B, A) as 0-255 integers, row by row
    """
    alpha0 = data[offset]
    alpha1 = data[offset + 1]

    if alpha0 > alpha1:
        alpha_palette = [alpha0, alpha1] + [
            ((7 - i) * alpha0 + i * alpha1 + 3) // 7 for i in range(1, 7)]
    else:
        alpha_palette = [alpha0, alpha1] + [
            ((5 - i) * alpha0 + i * alpha1 + 2) // 5 for i in range(1, 5)] + [0, 255]

    # 48-bit alpha index table follows the two endpoint bytes
    alpha_bits = struct.unpack_from("<Q", data, offset)[0] >> 16
    alpha_bits &= 0xFFFFFFFFFFFF

    c0_raw, c1_raw, indices = struct.unpack_from("<HHI", data, offset + 8)
    c0 = _rgb565_to_rgb(c0_raw)
    c1 = _rgb565_to_rgb(c1_raw)
    if c0_raw > c1_raw:
        c2 = tuple((2 * a + b + 1) // 3 for a, b in zip(c0, c1))
        c3 = tuple((a + 2 * b + 1) // 3 for a, b in zip(c0, c1))
    else:
        c2 = tuple((a + b) // 2 for a, b in zip(c0, c1))
        c3 = (0, 0, 0)
    palette = [c0, c1, c2, c3]

    pixels = []
    for i in range(16):
        r, g, b = palette[(indices >> (i * 2)) & 0x03]
        pixels.append((r, g, b, alpha_palette[(alpha_bits >> (i * 3)) & 0x07]))
    return pixels


# ===========================================================================
# Internal helpers
# ===========================================================================

def _as_pixels(rgba_data, width, height):
    if isinstance(rgba_data, np.ndarray):
        return rgba_data.reshape(height, width, 4).astype(np.uint8, copy=False)
    return np.frombuffer(rgba_data, dtype=np.uint8, count=width * height * 4).reshape(
        height, width, 4)


def _extract_blocks(pixels):
    """Split an image into (num_blocks, 16, 4) pixel blocks, row by row.

    Pixels outside image bounds are clamped to the nearest edge pixel.
    """
    height, width = pixels.shape[:2]
    pad_h = (-height) % 4
    pad_w = (-width) % 4
    if pad_h or pad_w:
        pixels = np.pad(pixels, ((0, pad_h), (0, pad_w), (0, 0)), mode='edge')
    blocks_y = pixels.shape[0] // 4
    blocks_x = pixels.shape[1] // 4
    return (pixels.reshape(blocks_y, 4, blocks_x, 4, 4)
            .transpose(0, 2, 1, 3, 4)
            .reshape(blocks_y * blocks_x, 16, 4))


def _compress_alpha(alphas, out):
    """Interpolated alpha: endpoints max/min, 3-bit nearest palette index."""
    alpha0 = alphas.max(axis=1)
    alpha1 = alphas.min(axis=1)

    # alpha0 > alpha1 -> 8 interpolated values; equal endpoints give all-zero indices
    steps = np.arange(1, 7)
    palette = np.empty((alphas.shape[0], 8), dtype=np.int32)
    palette[:, 0] = alpha0
    palette[:, 1] = alpha1
    palette[:, 2:] = ((7 - steps) * alpha0[:, None] + steps * alpha1[:, None] + 3) // 7

    indices = np.abs(alphas[:, :, None] - palette[:, None, :]).argmin(axis=2)
    shifts = np.arange(16, dtype=np.uint64) * np.uint64(3)
    bits = (indices.astype(np.uint64) << shifts).sum(axis=1, dtype=np.uint64)

    out['alpha0'] = alpha0
    out['alpha1'] = alpha1
    for k in range(6):
        out['alpha_bits'][:, k] = (bits >> np.uint64(8 * k)) & np.uint64(0xFF)


def _compress_color(rgb, out):
    """RGB min/max bounding box (inset by 1/16), 2-bit nearest palette index."""
    min_c = rgb.min(axis=1)
    max_c = rgb.max(axis=1)

    inset = (max_c - min_c) >> 4
    min_c = np.minimum(255, min_c + inset)
    max_c = np.maximum(0, max_c - inset)

    c0 = _rgb_to_rgb565(max_c)
    c1 = _rgb_to_rgb565(min_c)

    # Ensure c0 > c1 for 4-color mode (no transparency)
    swap = c0 < c1
    c0, c1 = np.where(swap, c1, c0), np.where(swap, c0, c1)
    hi = np.where(swap[:, None], min_c, max_c)
    lo = np.where(swap[:, None], max_c, min_c)

    palette = np.stack([
        hi,
        lo,
        (2 * hi + lo + 1) // 3,
        (hi + 2 * lo + 1) // 3,
    ], axis=1)

    diff = rgb[:, :, None, :] - palette[:, None, :, :]
    indices = (diff * diff).sum(axis=3).argmin(axis=2)
    # All same color: indices stay 0
    indices[c0 == c1] = 0

    shifts = np.arange(16, dtype=np.uint32) * np.uint32(2)
    out['color0'] = c0
    out['color1'] = c1
    out['color_bits'] = (indices.astype(np.uint32) << shifts).sum(axis=1, dtype=np.uint32)


def _rgb_to_rgb565(rgb):
    """Convert (..., 3) 8-bit RGB to RGB565."""
    return ((rgb[..., 0] >> 3) << 11) | ((rgb[..., 1] >> 2) << 5) | (rgb[..., 2] >> 3)


def _rgb565_to_rgb(val):
    """Convert an RGB565 value to an (R, G, B) tuple with 8-bit components."""
    r = ((val >> 11) & 0x1F) * 255 // 31
    g = ((val >> 5) & 0x3F) * 255 // 63
    b = (val & 0x1F) * 255 // 31
    return (r, g, b)


def _downsample_2x(pixels, dst_w, dst_h):
    """Downsample an RGBA image by 2x using a box filter.

    Averages each 2x2 block; source coordinates past the edge are clamped,
    so odd dimensions and 1-pixel-wide levels reuse the last row/column.
    """
    src_h, src_w = pixels.shape[:2]
    ys = np.minimum(np.arange(dst_h)[:, None] * 2 + np.arange(2)[None, :], src_h - 1)
    xs = np.minimum(np.arange(dst_w)[:, None] * 2 + np.arange(2)[None, :], src_w - 1)
    gathered = pixels[ys[:, :, None, None], xs[None, None, :, :]].astype(np.uint32)
    # gathered: (dst_h, 2, dst_w, 2, 4)
    return (gathered.sum(axis=(1, 3)) // 4).astype(np.uint8)
