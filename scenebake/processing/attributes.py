"""Tangent-space synthesis and quantized shading-attribute encoding.

For each vertex the attribute processor writes 8 bytes:

    uint32 tangent space (little-endian bitfield):
        bits  0-9   normal x      signed-octahedron coordinate, 10-bit
        bits 10-19  normal y      signed-octahedron coordinate, 10-bit
        bit  20     normal sign   1 = upper hemisphere (z > 0)
        bits 21-30  tangent       diamond-encoded angle, 10-bit
        bit  31     basis choice  which canonical tangent basis was used
    float16 u
    float16 v

Normals use signed-octahedron encoding:
    https://johnwhite3d.blogspot.com/2017/10/signed-octahedron-normal-encoding.html
Tangents use diamond encoding relative to the quantized normal:
    https://www.jeremyong.com/graphics/2023/01/09/tangent-spaces-and-diamond-encoding/

Quantization truncates (value * 1023) rather than rounding. Everything is
computed in float64 with numpy and is deterministic for identical input.
"""

import numpy as np

from ..errors import BoundsError


QUANT_BITS = 10
QUANT_MAX = (1 << QUANT_BITS) - 1

SHADING_ATTRIBUTE_SIZE = 8

# Interleaved per-vertex record as stored in CompiledMesh.shading_attributes
SHADING_ATTRIBUTE_DTYPE = np.dtype([
    ('tangent_space', '<u4'),
    ('u', '<f2'),
    ('v', '<f2'),
])

_UP = np.array([0.0, 0.0, 1.0])


# ---------------------------------------------------------------------------
# Vector helpers
# ---------------------------------------------------------------------------

def _normalize_rows(v):
    """Normalize (N, 3) rows; returns (unit_rows, ok_mask).

    Rows that are zero or non-finite come back as zeros with ok=False.
    """
    with np.errstate(divide='ignore', invalid='ignore', over='ignore'):
        length = np.sqrt((v * v).sum(axis=1))
        unit = v / length[:, None]
    ok = np.isfinite(unit).all(axis=1) & (length > 0.0)
    unit[~ok] = 0.0
    return unit, ok


def _reorthogonalize(v, other):
    """Gram-Schmidt `v` against unit vectors `other`, then normalize."""
    dot = (v * other).sum(axis=1, keepdims=True)
    return _normalize_rows(v - dot * other)


def _quantize(values):
    """Map [0, 1] floats to 10-bit integers by truncation."""
    return np.clip((values * QUANT_MAX).astype(np.int64), 0, QUANT_MAX).astype(np.uint32)


# ---------------------------------------------------------------------------
# Normals: signed octahedron
# ---------------------------------------------------------------------------

def signed_oct_encode(normals):
    """Encode unit normals (N, 3) as (N, 3): x, y in [0, 1] and a 0/1 sign."""
    n = np.asarray(normals, dtype=np.float64)
    n = n / np.abs(n).sum(axis=1, keepdims=True)

    encoded = np.empty_like(n)
    y = n[:, 1] * 0.5 + 0.5
    encoded[:, 0] = n[:, 0] * 0.5 + y
    encoded[:, 1] = n[:, 0] * -0.5 + y
    encoded[:, 2] = (n[:, 2] > 0.0).astype(np.float64)
    return encoded


def signed_oct_decode(encoded):
    """Inverse of signed_oct_encode; returns unit normals (N, 3)."""
    e = np.asarray(encoded, dtype=np.float64)
    n = np.empty_like(e)
    n[:, 0] = e[:, 0] - e[:, 1]
    n[:, 1] = e[:, 0] + e[:, 1] - 1.0
    n[:, 2] = (e[:, 2] * 2.0 - 1.0) * (1.0 - np.abs(n[:, 0]) - np.abs(n[:, 1]))
    return n / np.linalg.norm(n, axis=1, keepdims=True)


# ---------------------------------------------------------------------------
# Tangents: diamond encoding
# ---------------------------------------------------------------------------

def encode_diamond(p):
    """Map 2D directions (N, 2) on the unit circle to [0, 1]."""
    p = np.asarray(p, dtype=np.float64)
    # Project to the unit diamond, then to the x axis
    x = p[:, 0] / (np.abs(p[:, 0]) + np.abs(p[:, 1]))
    # Contract x by 4 so all four quadrants fit the unit range
    py_sign = np.where(p[:, 1] >= 0.0, 1.0, -1.0)
    return -py_sign * 0.25 * x + 0.5 + py_sign * 0.25


def decode_diamond(values):
    """Inverse of encode_diamond; returns unit 2D directions (N, 2)."""
    p = np.asarray(values, dtype=np.float64)
    p_sign = np.where(p - 0.5 >= 0.0, 1.0, -1.0)
    v = np.empty((p.shape[0], 2))
    v[:, 0] = -p_sign * 4.0 * p + 1.0 + p_sign * 2.0
    v[:, 1] = p_sign * (1.0 - np.abs(v[:, 0]))
    return v / np.linalg.norm(v, axis=1, keepdims=True)


def tangent_basis(normals, choices=None):
    """Canonical tangent-plane basis (t1, t2) for unit normals.

    t1 zeroes the normal's z component when |n.y| > |n.z| (choice True),
    otherwise its y component. Passing `choices` forces the recorded choice.

    Returns:
        (t1, t2, choices)
    """
    n = np.asarray(normals, dtype=np.float64)
    if choices is None:
        choices = np.abs(n[:, 1]) > np.abs(n[:, 2])
    else:
        choices = np.asarray(choices, dtype=bool)

    zero = np.zeros(n.shape[0])
    t1 = np.where(
        choices[:, None],
        np.stack([n[:, 1], -n[:, 0], zero], axis=1),
        np.stack([n[:, 2], zero, -n[:, 0]], axis=1),
    )
    t1 = t1 / np.linalg.norm(t1, axis=1, keepdims=True)
    t2 = np.cross(t1, n)
    return t1, t2, choices


def encode_tangent(normals, tangents):
    """Encode tangents as one [0, 1] value each, relative to `normals`.

    Returns:
        (values, choices) where choices is the basis-choice bit per vertex
    """
    t = np.asarray(tangents, dtype=np.float64)
    t1, t2, choices = tangent_basis(normals)
    packed = np.stack([(t * t1).sum(axis=1), (t * t2).sum(axis=1)], axis=1)
    return encode_diamond(packed), choices


def decode_tangent(normals, values, choices):
    """Inverse of encode_tangent using the stored basis-choice bits."""
    t1, t2, _ = tangent_basis(normals, choices)
    p = decode_diamond(values)
    return p[:, 0:1] * t1 + p[:, 1:2] * t2


# ---------------------------------------------------------------------------
# Bit packing
# ---------------------------------------------------------------------------

def pack_tangent_space(oct_x, oct_y, oct_sign, tangent, choice):
    """Pack quantized fields into uint32 tangent-space words."""
    return (np.asarray(oct_x, dtype=np.uint32)
            | (np.asarray(oct_y, dtype=np.uint32) << np.uint32(10))
            | (np.asarray(oct_sign, dtype=np.uint32) << np.uint32(20))
            | (np.asarray(tangent, dtype=np.uint32) << np.uint32(21))
            | (np.asarray(choice, dtype=np.uint32) << np.uint32(31)))


def unpack_tangent_space(packed):
    """Split uint32 tangent-space words into (oct_x, oct_y, oct_sign, tangent, choice)."""
    p = np.asarray(packed, dtype=np.uint32)
    return (
        p & np.uint32(QUANT_MAX),
        (p >> np.uint32(10)) & np.uint32(QUANT_MAX),
        (p >> np.uint32(20)) & np.uint32(1),
        (p >> np.uint32(21)) & np.uint32(QUANT_MAX),
        (p >> np.uint32(31)) & np.uint32(1),
    )


def pack_half2x16(uvs):
    """Pack (N, 2) floats as uint32: half(u) in the low 16 bits, half(v) high."""
    halves = np.ascontiguousarray(np.asarray(uvs, dtype=np.float16)).view(np.uint16)
    halves = halves.reshape(-1, 2).astype(np.uint32)
    return halves[:, 0] | (halves[:, 1] << np.uint32(16))


def quantize_tangent_space(normals, tangents):
    """Quantize unit normals and tangents to packed uint32 tangent-space words."""
    enc = signed_oct_encode(normals)
    oct_x = _quantize(enc[:, 0])
    oct_y = _quantize(enc[:, 1])
    oct_sign = enc[:, 2].astype(np.uint32)

    # The tangent is encoded against the normal the shader will reconstruct
    decoded = signed_oct_decode(np.stack([
        oct_x / QUANT_MAX, oct_y / QUANT_MAX, oct_sign.astype(np.float64)], axis=1))
    values, choices = encode_tangent(decoded, tangents)
    return pack_tangent_space(oct_x, oct_y, oct_sign, _quantize(values), choices)


def decode_shading_attributes(data):
    """Decode a packed shading-attribute buffer.

    Args:
        data: bytes-like of N * 8 bytes (SHADING_ATTRIBUTE_DTYPE records)

    Returns:
        (normals, tangents, uvs) float64 arrays of shape (N,3), (N,3), (N,2)
    """
    records = np.frombuffer(data, dtype=SHADING_ATTRIBUTE_DTYPE)
    oct_x, oct_y, oct_sign, tangent, choice = unpack_tangent_space(records['tangent_space'])
    normals = signed_oct_decode(np.stack([
        oct_x / QUANT_MAX, oct_y / QUANT_MAX, oct_sign.astype(np.float64)], axis=1))
    tangents = decode_tangent(normals, tangent / QUANT_MAX, choice.astype(bool))
    uvs = np.stack([records['u'], records['v']], axis=1).astype(np.float64)
    return normals, tangents, uvs


# ---------------------------------------------------------------------------
# Mesh processing
# ---------------------------------------------------------------------------

class AttributeProcessor:
    """Builds quantized shading attributes for one mesh at a time.

    Holds scratch accumulation buffers that are reused across calls, so one
    instance must not be shared between threads. The scene compiler hands
    out one instance per worker through a ProcessorPool.
    """

    def __init__(self, flip_uvs=False):
        self.flip_uvs = flip_uvs
        self._normals = np.zeros((0, 3))
        self._tangents = np.zeros((0, 3))
        self._bitangents = np.zeros((0, 3))

    def _reset_scratch(self, count):
        if self._normals.shape[0] < count:
            self._normals = np.zeros((count, 3))
            self._tangents = np.zeros((count, 3))
            self._bitangents = np.zeros((count, 3))
        normals = self._normals[:count]
        tangents = self._tangents[:count]
        bitangents = self._bitangents[:count]
        normals.fill(0.0)
        tangents.fill(0.0)
        bitangents.fill(0.0)
        return normals, tangents, bitangents

    def process_mesh(self, positions, normals, tex_coords, indices,
                     out_tangent_spaces, out_tex_coords):
        """Write packed tangent spaces and UVs for every vertex.

        Args:
            positions: StridedRegion of float Vec3
            normals: StridedRegion of float Vec3, or an empty region to
                synthesize area-weighted smooth normals
            tex_coords: StridedRegion of float Vec2, or an empty region
            indices: StridedRegion of uint32 triangle-list indices
            out_tangent_spaces: writable StridedRegion of uint32
            out_tex_coords: writable StridedRegion of uint32 (two halves)

        Returns:
            number of vertices written

        Raises:
            BoundsError: on an index past the vertex count, an index count
                that is not a multiple of 3, attribute counts that disagree,
                or output regions that are too small / read-only
        """
        vertex_count = positions.count
        has_normals = bool(normals)
        has_tex_coords = bool(tex_coords)

        if has_normals and normals.count != vertex_count:
            raise BoundsError(
                f"Normal count {normals.count} != position count {vertex_count}")
        if has_tex_coords and tex_coords.count != vertex_count:
            raise BoundsError(
                f"Texture coordinate count {tex_coords.count} != position count {vertex_count}")
        for region in (out_tangent_spaces, out_tex_coords):
            if region.count < vertex_count:
                raise BoundsError(
                    f"Output region holds {region.count} elements, need {vertex_count}")
            if vertex_count and not region.writable:
                raise BoundsError("Output region is read-only")
        if indices.count % 3:
            raise BoundsError(
                f"Index[{indices.count}] out of bounds for count: {indices.count}")

        if not vertex_count:
            return 0

        acc_normals, acc_tangents, acc_bitangents = self._reset_scratch(vertex_count)
        if has_normals:
            acc_normals[:] = normals.as_array()

        uvs = None
        if has_tex_coords:
            uvs = tex_coords.as_array().astype(np.float64)
            if self.flip_uvs:
                uvs[:, 1] = 1.0 - uvs[:, 1]

        triangles = indices.as_array()[:, 0].astype(np.int64).reshape(-1, 3)
        if triangles.size:
            corners = positions.take(triangles.ravel()).astype(np.float64).reshape(-1, 3, 3)
            self._accumulate(triangles, corners, uvs, has_normals,
                             acc_normals, acc_tangents, acc_bitangents)

        unit_normals, ok = _normalize_rows(acc_normals)
        unit_normals[~ok] = _UP

        tangents, _ = _normalize_rows(acc_tangents)
        tangents, ok = _reorthogonalize(tangents, unit_normals)
        if not ok.all():
            tangents[~ok] = _fallback_tangents(unit_normals[~ok])

        # Bitangents only feed the tangent handedness; normalized for completeness
        acc_bitangents[:], _ = _normalize_rows(acc_bitangents)

        _write(out_tangent_spaces, quantize_tangent_space(unit_normals, tangents))
        if uvs is None:
            uvs = np.zeros((vertex_count, 2))
        _write(out_tex_coords, pack_half2x16(uvs))
        return vertex_count

    @staticmethod
    def _accumulate(triangles, corners, uvs, has_normals,
                    acc_normals, acc_tangents, acc_bitangents):
        """Area-weighted accumulation of face normals/tangents onto vertices."""
        e12 = corners[:, 1] - corners[:, 0]
        e13 = corners[:, 2] - corners[:, 0]

        cross = np.cross(e12, e13)
        area = np.linalg.norm(0.5 * cross, axis=1)

        # Zero-area triangles contribute nothing to their vertices
        valid = np.isfinite(area) & (area > 0.0)
        if not valid.any():
            return
        triangles = triangles[valid]
        e12 = e12[valid]
        e13 = e13[valid]
        area = area[valid]
        face_normals = cross[valid] / (2.0 * area)[:, None]

        tangents = np.zeros_like(e12)
        bitangents = np.zeros_like(e12)
        if uvs is not None:
            tc = uvs[triangles]
            u12 = tc[:, 1] - tc[:, 0]
            u13 = tc[:, 2] - tc[:, 0]
            with np.errstate(divide='ignore', invalid='ignore'):
                f = 1.0 / (u12[:, 0] * u13[:, 1] - u13[:, 0] * u12[:, 1])
            # Collapsed UVs: no tangent contribution
            f[~np.isfinite(f)] = 0.0
            tangents = f[:, None] * (u13[:, 1:2] * e12 - u12[:, 1:2] * e13)
            bitangents = f[:, None] * (u12[:, 0:1] * e13 - u13[:, 0:1] * e12)

        weight = area[:, None]
        for corner in range(3):
            vertex = triangles[:, corner]
            if not has_normals:
                np.add.at(acc_normals, vertex, weight * face_normals)
            np.add.at(acc_tangents, vertex, weight * tangents)
            np.add.at(acc_bitangents, vertex, weight * bitangents)


def _fallback_tangents(normals):
    """Stable tangent for vertices whose accumulated tangent is unusable."""
    seed = np.where(
        (np.abs(normals[:, 0]) > 0.9)[:, None],
        np.array([0.0, 1.0, 0.0]),
        np.array([1.0, 0.0, 0.0]),
    )
    tangents, _ = _reorthogonalize(seed, normals)
    return tangents


def _write(region, values):
    region.as_array()[:values.shape[0], 0] = values
