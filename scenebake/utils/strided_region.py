"""Bounds-checked typed views over externally owned memory.

A StridedRegion decouples the logical layout of one vertex attribute from
the physical layout of the buffer holding it. The attribute processor reads
positions/normals/UVs/indices and writes packed shading attributes through
regions, so the same code serves tightly packed arrays and interleaved
vertex buffers:

    shading = bytearray(vertex_count * 8)
    tangent_spaces = StridedRegion(shading, 8, vertex_count, '<u4')
    tex_coords = StridedRegion(shading, 8, vertex_count, '<u4', offset=4)

The region never owns or copies the buffer.
"""

import numpy as np

from ..errors import BoundsError


class StridedRegion:
    """Typed view of `count` elements spaced `stride` bytes apart.

    Attributes:
        buffer: any object exposing the buffer protocol (bytes, bytearray,
            memoryview, contiguous numpy array); None for an empty region
        stride: distance in bytes between consecutive elements
        count: number of elements
        dtype: numpy dtype of one scalar component
        components: scalar components per element (3 for a Vec3)
        offset: byte offset of element 0 inside the buffer
    """

    __slots__ = ('buffer', 'stride', 'count', 'dtype', 'components', 'offset', '_view')

    def __init__(self, buffer, stride, count, dtype, components=1, offset=0):
        self.buffer = buffer
        self.stride = int(stride)
        self.count = int(count)
        self.dtype = np.dtype(dtype)
        self.components = int(components)
        self.offset = int(offset)
        self._view = None

        if self.count < 0 or self.stride < 0 or self.offset < 0:
            raise BoundsError(
                f"Invalid region (count={count}, stride={stride}, offset={offset})")
        if self.count and self.stride < self.dtype.itemsize * self.components:
            raise BoundsError(
                f"Stride {stride} too small for {self.components} x {self.dtype}")
        if self.count:
            needed = self.offset + (self.count - 1) * self.stride \
                + self.dtype.itemsize * self.components
            available = memoryview(buffer).nbytes
            if needed > available:
                raise BoundsError(
                    f"Region needs {needed} bytes, buffer holds {available}")

    @classmethod
    def empty(cls, dtype='<f4', components=1):
        """Region standing for an absent attribute."""
        return cls(None, 0, 0, dtype, components)

    @classmethod
    def from_array(cls, array):
        """Wrap a C-contiguous 1D or 2D numpy array (rows become elements)."""
        array = np.asarray(array)
        if not array.flags['C_CONTIGUOUS']:
            raise ValueError("StridedRegion.from_array requires a C-contiguous array")
        if array.ndim == 1:
            return cls(array, array.itemsize, array.shape[0], array.dtype)
        if array.ndim == 2:
            return cls(array, array.strides[0], array.shape[0], array.dtype, array.shape[1])
        raise ValueError(f"Expected a 1D or 2D array, got shape {array.shape}")

    def __len__(self):
        return self.count

    def __bool__(self):
        return self.count > 0

    def __repr__(self):
        return (f"StridedRegion(count={self.count}, stride={self.stride}, "
                f"dtype={self.dtype.str}, components={self.components})")

    @property
    def writable(self):
        if not self.count:
            return False
        return not memoryview(self.buffer).readonly

    def as_array(self):
        """Zero-copy numpy view of shape (count, components)."""
        if self._view is None:
            if not self.count:
                self._view = np.zeros((0, self.components), dtype=self.dtype)
            else:
                self._view = np.ndarray(
                    shape=(self.count, self.components),
                    dtype=self.dtype,
                    buffer=self.buffer,
                    offset=self.offset,
                    strides=(self.stride, self.dtype.itemsize),
                )
        return self._view

    def _check_index(self, i):
        if i < 0 or not self.count or (i + 1) * self.stride > self.count * self.stride:
            raise BoundsError(f"Index[{i}] out of bounds for count: {self.count}")

    def get(self, i):
        """Read element i (a scalar for 1-component regions, else a tuple)."""
        self._check_index(i)
        row = self.as_array()[i]
        if self.components == 1:
            return row[0].item()
        return tuple(v.item() for v in row)

    def set(self, i, value):
        """Write element i.

        Raises:
            BoundsError: if i is out of range or the buffer is read-only
        """
        self._check_index(i)
        if not self.writable:
            raise BoundsError("Cannot write through a read-only region")
        self.as_array()[i] = value

    def take(self, indices):
        """Gather the elements at `indices` into a new (len(indices), components) array.

        Raises:
            BoundsError: if any index is negative or >= count
        """
        indices = np.asarray(indices, dtype=np.int64)
        if indices.size:
            lo = int(indices.min())
            hi = int(indices.max())
            if lo < 0 or hi >= self.count:
                bad = hi if hi >= self.count else lo
                raise BoundsError(f"Index[{bad}] out of bounds for count: {self.count}")
        return self.as_array()[indices]
