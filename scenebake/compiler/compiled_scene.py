"""Render-ready output of the scene compiler.

Compiled entities own their buffers. Textures are shared by reference
between materials, and meshes between instances; identity matters (two
materials using the same constant color hold the same CompiledTexture).
"""

import logging

import numpy as np

from ..errors import BoundsError
from ..processing.attributes import SHADING_ATTRIBUTE_SIZE
from ..processing.images import TextureFormat
from ..utils.dxt_compress import compressed_size, decompress_dxt5


_log = logging.getLogger("scenebake.compiler")


class CompiledTexture:
    """Texture payload plus the metadata the renderer needs to upload it.

    Attributes:
        width, height: top-level dimensions in pixels
        format: TextureFormat tag of the payload
        data: payload bytes (all mip levels, largest first)
        min_alpha, max_alpha: alpha range of the top level in [0, 1];
            (1.0, 0.0) when alpha was not scanned
        mip_levels: number of levels in data
    """

    __slots__ = ('width', 'height', 'format', 'data', 'min_alpha', 'max_alpha', 'mip_levels')

    def __init__(self, width=0, height=0, format=TextureFormat.RGBA8_UNORM, data=b'',
                 min_alpha=1.0, max_alpha=0.0, mip_levels=1):
        self.width = width
        self.height = height
        self.format = format
        self.data = data
        self.min_alpha = min_alpha
        self.max_alpha = max_alpha
        self.mip_levels = mip_levels

    @classmethod
    def from_processed(cls, image):
        return cls(image.width, image.height, image.format, image.data,
                   image.min_alpha, image.max_alpha, image.mip_levels)

    @classmethod
    def single_pixel(cls, rgba8):
        """1x1 RGBA8 texture from 4 bytes; alpha range comes from the pixel."""
        rgba8 = bytes(rgba8)
        alpha = float(np.float32(rgba8[3] / 255.0))
        return cls(1, 1, TextureFormat.RGBA8_UNORM, rgba8, alpha, alpha, 1)

    @property
    def is_empty(self):
        return not self.data or self.width == 0 or self.height == 0

    def __repr__(self):
        return (f"CompiledTexture({self.width}x{self.height}, {self.format.name}, "
                f"{len(self.data)} bytes, mips={self.mip_levels})")

    def decode_rgba(self):
        """Decode the top mip level to a (height, width, 4) uint8 array."""
        if self.format == TextureFormat.RGBA8_UNORM:
            size = self.width * self.height * 4
            return np.frombuffer(self.data[:size], dtype=np.uint8).reshape(
                self.height, self.width, 4).copy()
        if self.format == TextureFormat.BC3_UNORM:
            size = compressed_size(self.width, self.height)
            return decompress_dxt5(self.data[:size], self.width, self.height)
        raise ValueError(f"Cannot decode texture format {self.format!r}")


class CompiledMaterial:
    """Five texture channels plus alpha state.

    Texture channels:
        base_color    RGB color, A opacity
        normal        tangent-space normal map
        metal_rough   R metallic, G roughness
        emissive      RGB emission
        transmission  RGB transmission
    """

    __slots__ = ('base_color', 'normal', 'metal_rough', 'emissive', 'transmission',
                 'alpha_cutoff', 'alpha_mask', 'alpha_blend')

    TEXTURE_SLOTS = ('base_color', 'normal', 'metal_rough', 'emissive', 'transmission')

    def __init__(self, base_color=None, normal=None, metal_rough=None,
                 emissive=None, transmission=None,
                 alpha_cutoff=0.5, alpha_mask=False, alpha_blend=False):
        self.base_color = base_color
        self.normal = normal
        self.metal_rough = metal_rough
        self.emissive = emissive
        self.transmission = transmission
        self.alpha_cutoff = alpha_cutoff
        self.alpha_mask = alpha_mask
        self.alpha_blend = alpha_blend

    def textures(self):
        return [getattr(self, slot) for slot in self.TEXTURE_SLOTS]


class SubMesh:
    """Contiguous index range of a mesh drawn with one material."""

    __slots__ = ('vertex_offset', 'max_vertex', 'first_index', 'index_count', 'material')

    def __init__(self, vertex_offset=0, max_vertex=0, first_index=0, index_count=0,
                 material=None):
        self.vertex_offset = vertex_offset
        self.max_vertex = max_vertex
        self.first_index = first_index
        self.index_count = index_count
        self.material = material

    def __repr__(self):
        return (f"SubMesh(vertices=[{self.vertex_offset}, {self.max_vertex}], "
                f"indices=[{self.first_index}, +{self.index_count}])")


class CompiledMesh:
    """Packed geometry.

    Attributes:
        positions: (N, 3) float32
        shading_attributes: bytearray of N * 8 bytes
            (see scenebake.processing.attributes)
        indices: (M,) uint32
        sub_meshes: list of SubMesh
    """

    __slots__ = ('positions', 'shading_attributes', 'indices', 'sub_meshes')

    def __init__(self, positions=None, shading_attributes=None, indices=None, sub_meshes=None):
        self.positions = (np.zeros((0, 3), dtype=np.float32)
                          if positions is None else positions)
        self.shading_attributes = (bytearray()
                                   if shading_attributes is None else shading_attributes)
        self.indices = np.zeros(0, dtype=np.uint32) if indices is None else indices
        self.sub_meshes = [] if sub_meshes is None else sub_meshes

    @property
    def vertex_count(self):
        return self.positions.shape[0]

    def validate(self):
        """Check buffer sizes and that every sub-mesh stays inside the mesh.

        Raises:
            BoundsError: on the first inconsistency found
        """
        count = self.vertex_count
        if len(self.shading_attributes) != count * SHADING_ATTRIBUTE_SIZE:
            raise BoundsError(
                f"Shading attributes hold {len(self.shading_attributes)} bytes, "
                f"expected {count * SHADING_ATTRIBUTE_SIZE}")
        index_count = self.indices.shape[0]
        for i, sub in enumerate(self.sub_meshes):
            if sub.first_index < 0 or sub.first_index + sub.index_count > index_count:
                raise BoundsError(
                    f"SubMesh[{i}] index range [{sub.first_index}, "
                    f"{sub.first_index + sub.index_count}) out of bounds for count: {index_count}")
            if sub.vertex_offset < 0 or sub.max_vertex >= max(count, 1) \
                    or sub.vertex_offset > sub.max_vertex:
                raise BoundsError(
                    f"SubMesh[{i}] vertex range [{sub.vertex_offset}, {sub.max_vertex}] "
                    f"out of bounds for count: {count}")
            used = self.indices[sub.first_index:sub.first_index + sub.index_count]
            if used.size and int(used.max()) + sub.vertex_offset > sub.max_vertex:
                raise BoundsError(
                    f"SubMesh[{i}] references vertex {int(used.max()) + sub.vertex_offset} "
                    f"past max_vertex {sub.max_vertex}")


class CompiledInstance:
    __slots__ = ('mesh', 'transform')

    def __init__(self, mesh, transform):
        self.mesh = mesh
        self.transform = transform


class CompiledScene:
    """Everything the renderer uploads.

    materials[0] is always the default material.
    """

    __slots__ = ('textures', 'materials', 'meshes', 'instances')

    def __init__(self):
        self.textures = []
        self.materials = []
        self.meshes = []
        self.instances = []

    @property
    def default_material(self):
        return self.materials[0] if self.materials else None

    def iter_buffers(self):
        """Yield (name, bytes) for every renderer-visible buffer, in a stable order."""
        for i, texture in enumerate(self.textures):
            yield f"texture[{i}]", bytes(texture.data)
        for i, mesh in enumerate(self.meshes):
            yield f"mesh[{i}].positions", mesh.positions.tobytes()
            yield f"mesh[{i}].shading_attributes", bytes(mesh.shading_attributes)
            yield f"mesh[{i}].indices", mesh.indices.tobytes()
        for i, instance in enumerate(self.instances):
            yield f"instance[{i}].transform", instance.transform.tobytes()

    def debug_dump(self, logger=None):
        """Log texture, material and mesh layout at info level."""
        log = logger or _log
        texture_ids = {id(t): i for i, t in enumerate(self.textures)}
        mesh_ids = {id(m): i for i, m in enumerate(self.meshes)}

        log.info("CompiledScene: %d textures, %d materials, %d meshes, %d instances",
                 len(self.textures), len(self.materials), len(self.meshes), len(self.instances))
        for i, texture in enumerate(self.textures):
            log.info("  Texture[%d] %r alpha=[%.3f, %.3f]",
                     i, texture, texture.min_alpha, texture.max_alpha)
        for i, material in enumerate(self.materials):
            slots = ", ".join(
                f"{slot}={texture_ids.get(id(t), '?')}"
                for slot, t in zip(CompiledMaterial.TEXTURE_SLOTS, material.textures()))
            log.info("  Material[%d] %s cutoff=%.3f mask=%s blend=%s",
                     i, slots, material.alpha_cutoff, material.alpha_mask, material.alpha_blend)
        for i, mesh in enumerate(self.meshes):
            log.info("  Mesh[%d] positions=%d bytes, shading=%d bytes, indices=%d bytes",
                     i, mesh.positions.nbytes, len(mesh.shading_attributes), mesh.indices.nbytes)
            for j, sub in enumerate(mesh.sub_meshes):
                log.info("    SubMesh[%d] %r", j, sub)
        for i, instance in enumerate(self.instances):
            log.info("  Instance[%d] mesh=%s translation=%s",
                     i, mesh_ids.get(id(instance.mesh), '?'), instance.transform[:, 3].tolist())
