"""IR meshes, instances and the scene container produced by parsers."""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

from .ir_indices import MaterialIndex, MeshIndex
from .ir_materials import Material
from .ir_textures import ImageFileURI, Texture


_log = logging.getLogger("scenebake.ir")


def _identity_transform():
    return np.hstack([np.eye(3, dtype=np.float32), np.zeros((3, 1), dtype=np.float32)])


def _as_attribute(values, components, dtype, name):
    if values is None:
        return None
    array = np.ascontiguousarray(values, dtype=dtype)
    if array.size == 0:
        return None
    if array.ndim != 2 or array.shape[1] != components:
        array = array.reshape(-1, components) if array.size % components == 0 else array
    if array.ndim != 2 or array.shape[1] != components:
        raise ValueError(f"{name} must have {components} components per vertex, got {array.shape}")
    return array


@dataclass
class Mesh:
    """Triangle-list mesh.

    Attributes:
        positions: (N, 3) float32
        normals: (N, 3) float32, or None to synthesize smooth normals
        tex_coords: (N, 2) float32, or None
        indices: (M,) uint32, M a multiple of 3
        material: MaterialIndex (unset -> default material)
    """

    positions: np.ndarray
    indices: np.ndarray
    normals: Optional[np.ndarray] = None
    tex_coords: Optional[np.ndarray] = None
    material: MaterialIndex = field(default_factory=MaterialIndex.none)
    name: str = ""

    def __post_init__(self):
        self.positions = _as_attribute(self.positions, 3, np.float32, "positions")
        if self.positions is None:
            self.positions = np.zeros((0, 3), dtype=np.float32)
        self.normals = _as_attribute(self.normals, 3, np.float32, "normals")
        self.tex_coords = _as_attribute(self.tex_coords, 2, np.float32, "tex_coords")
        self.indices = np.ascontiguousarray(self.indices, dtype=np.uint32).reshape(-1)
        if not isinstance(self.material, MaterialIndex):
            self.material = MaterialIndex(self.material)

    @property
    def vertex_count(self):
        return self.positions.shape[0]

    @property
    def triangle_count(self):
        return self.indices.shape[0] // 3


@dataclass
class Instance:
    """Placement of a mesh.

    transform is 3 rows x 4 columns (column 3 = translation). A 4x4 matrix
    is accepted and its last row dropped.
    """

    mesh: MeshIndex = field(default_factory=MeshIndex.none)
    transform: np.ndarray = field(default_factory=_identity_transform)

    def __post_init__(self):
        if not isinstance(self.mesh, MeshIndex):
            self.mesh = MeshIndex(self.mesh)
        transform = np.asarray(self.transform, dtype=np.float32)
        if transform.shape == (4, 4):
            transform = transform[:3]
        if transform.shape != (3, 4):
            raise ValueError(f"Instance transform must be 3x4 or 4x4, got {transform.shape}")
        self.transform = np.ascontiguousarray(transform)


@dataclass
class Scene:
    textures: List[Texture] = field(default_factory=list)
    materials: List[Material] = field(default_factory=list)
    meshes: List[Mesh] = field(default_factory=list)
    instances: List[Instance] = field(default_factory=list)

    def summary(self):
        """Entity counts, with texture sources broken down by kind."""
        unique_paths = set()
        duplicated = 0
        buffers = 0
        for texture in self.textures:
            if isinstance(texture.source, ImageFileURI):
                if texture.source.uri in unique_paths:
                    duplicated += 1
                else:
                    unique_paths.add(texture.source.uri)
            else:
                buffers += 1
        return {
            'textures': len(self.textures),
            'unique_files': len(unique_paths),
            'duplicate_files': duplicated,
            'buffers': buffers,
            'materials': len(self.materials),
            'meshes': len(self.meshes),
            'instances': len(self.instances),
        }

    def log_summary(self, logger=None, verbose=False):
        """Log the summary, plus per-entity detail when verbose."""
        log = logger or _log
        s = self.summary()
        log.info("Textures = %d", s['textures'])
        log.info("  Unique Files: %d (%d duplicates)", s['unique_files'], s['duplicate_files'])
        log.info("  Buffers: %d", s['buffers'])
        log.info("Materials: %d", s['materials'])
        log.info("Meshes: %d", s['meshes'])
        log.info("Instances: %d", s['instances'])
        if not verbose:
            return

        for i, texture in enumerate(self.textures):
            log.info("Texture[%d]: %s", i, texture.describe())
        for i, material in enumerate(self.materials):
            log.info("Material[%d] %s", i, material.name)
            for prop in material.properties:
                log.info("  %s: %r", prop.kind.value, prop.value)
        for i, mesh in enumerate(self.meshes):
            log.info("Mesh[%d]: %d vertices, %d triangles, %r",
                     i, mesh.vertex_count, mesh.triangle_count, mesh.material)
        for i, instance in enumerate(self.instances):
            log.info("Instance[%d]: %r", i, instance.mesh)
