"""Scene compiler: IR Scene -> CompiledScene.

Stages run strictly in order, each fanned out over a thread pool:

    1. Textures referenced by a material are processed (decode, downsample,
       compress, cache). Missing or undecodable images are logged and
       left unprocessed; the materials using them fall back.
    2. Materials resolve their five channels. Constants become shared
       single-pixel textures.
    3. Meshes copy positions and indices and pack shading attributes.
    4. Instances reference the compiled meshes.

Results are always collected in input order, so compiling the same scene
twice yields identical buffers.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor

import numpy as np

from ..errors import BoundsError, DecodeError, MissingFileError, SceneBakeError
from ..processing.attributes import SHADING_ATTRIBUTE_SIZE, AttributeProcessor
from ..processing.images import ImageProcess, ImageProcessor
from ..processing.pool import ProcessorPool
from ..scene_ir.ir_materials import PropertyKind
from ..scene_ir.ir_textures import ImageBuffer, ImageFileBuffer, ImageFileURI
from ..settings import CompileSettings, debug_enabled
from ..utils.strided_region import StridedRegion
from .compiled_scene import (
    CompiledInstance, CompiledMesh, CompiledScene, CompiledTexture, SubMesh,
)
from .material_resolver import MaterialResolver, PixelTextureCache


_log = logging.getLogger("scenebake.compiler")


class CompileStats:
    """Counters from the last compile() call."""

    __slots__ = ('textures_processed', 'textures_failed', 'images_decoded',
                 'cache_hits', 'pixel_textures', 'elapsed')

    def __init__(self):
        self.textures_processed = 0
        self.textures_failed = 0
        self.images_decoded = 0
        self.cache_hits = 0
        self.pixel_textures = 0
        self.elapsed = 0.0


class SceneCompiler:
    """Compiles IR scenes with one set of settings.

    A compiler holds no per-scene state between calls apart from `stats`;
    processors and the pixel dedup map are created per compile() call.
    """

    def __init__(self, settings=None):
        self.settings = settings if settings is not None else CompileSettings()
        self.stats = CompileStats()

    def compile(self, scene):
        """Compile `scene`.

        Returns:
            CompiledScene (materials[0] is the default material)

        Raises:
            BoundsError: an IR index points past its target list, or a mesh
                has a malformed index list
            ConfigurationError: invalid settings
            SceneBakeError: any other non-recoverable processing failure
        """
        settings = self.settings
        settings.validate()
        t_start = time.time()
        self.stats = stats = CompileStats()

        image_pool = ProcessorPool(lambda: ImageProcessor(settings.cache_dir))
        attribute_pool = ProcessorPool(lambda: AttributeProcessor(settings.flip_uvs))
        out = CompiledScene()

        with ThreadPoolExecutor(max_workers=settings.max_workers,
                                thread_name_prefix="scenebake") as executor:
            processed = self._compile_textures(scene, executor, image_pool)

            pixels = PixelTextureCache()
            resolver = MaterialResolver(processed, pixels)
            out.materials.append(resolver.default_material())
            out.materials.extend(executor.map(
                lambda i: self._compile_material(i, scene.materials[i], resolver),
                range(len(scene.materials))))
            out.textures = _collect_textures(processed, resolver, out.materials)

            ir_materials = out.materials[1:]
            out.meshes = list(executor.map(
                lambda i: self._compile_mesh(
                    i, scene.meshes[i], out.materials[0], ir_materials, attribute_pool),
                range(len(scene.meshes))))

        for i, instance in enumerate(scene.instances):
            out.instances.append(self._compile_instance(i, instance, out.meshes))

        for processor in image_pool.instances:
            stats.images_decoded += processor.decode_count
            stats.cache_hits += processor.cache_hits
        stats.pixel_textures = len(pixels)
        stats.elapsed = time.time() - t_start

        fail_info = ""
        if stats.textures_failed:
            fail_info = f" [texture_fail={stats.textures_failed}]"
        _log.info(
            "Compiled scene in %.2fs: %d textures (%d processed, %d decoded, %d cached, "
            "%d pixel), %d materials, %d meshes, %d instances%s",
            stats.elapsed, len(out.textures), stats.textures_processed,
            stats.images_decoded, stats.cache_hits, stats.pixel_textures,
            len(out.materials), len(out.meshes), len(out.instances), fail_info)
        if debug_enabled():
            out.debug_dump()
        return out

    # -----------------------------------------------------------------------
    # Textures
    # -----------------------------------------------------------------------

    def _texture_processes(self, scene):
        """ImageProcess flags for every texture referenced by a material."""
        base = ImageProcess.TRACK_ALPHA
        if self.settings.generate_mips:
            base |= ImageProcess.GEN_MIPS

        processes = {}
        for material in scene.materials:
            for kind, index in material.referenced_textures():
                flags = processes.get(index.value, base)
                if kind is PropertyKind.NORMAL and self.settings.flip_normal_map_z:
                    flags |= ImageProcess.FLIP_NORMAL_Z
                processes[index.value] = flags
        return processes

    def _compile_textures(self, scene, executor, pool):
        processes = self._texture_processes(scene)
        for index in processes:
            if index >= len(scene.textures):
                _log.error("Texture[%d] referenced by a material does not exist", index)
                raise BoundsError(
                    f"Texture[{index}] out of bounds for count: {len(scene.textures)}")

        def run(i):
            flags = processes.get(i)
            if flags is None:
                return None
            return self._compile_texture(i, scene.textures[i], flags, pool)

        textures = list(executor.map(run, range(len(scene.textures))))
        self.stats.textures_processed = sum(1 for t in textures if t is not None)
        self.stats.textures_failed = len(processes) - self.stats.textures_processed
        return textures

    def _compile_texture(self, index, texture, processes, pool):
        settings = self.settings
        source = texture.source
        kwargs = {
            'max_dim': settings.max_texture_dim,
            'processes': processes,
            'compress': settings.compress_textures,
            'use_cache': False,
        }
        if isinstance(source, ImageFileURI):
            data = source.uri
            kwargs['use_cache'] = settings.use_cache
        elif isinstance(source, ImageFileBuffer):
            data = source.data
        elif isinstance(source, ImageBuffer):
            data = source.data
            kwargs['raw_size'] = (source.width, source.height)
        else:
            raise SceneBakeError(f"Texture[{index}] has an unsupported source")

        try:
            image = pool.get().process_image(data, **kwargs)
        except (DecodeError, MissingFileError) as e:
            _log.warning("Texture[%d] unavailable, using fallback: %s", index, e)
            return None
        except SceneBakeError as e:
            _log.error("Texture[%d] failed: %s", index, e)
            raise

        if debug_enabled():
            _log.debug("Texture[%d] %s -> %r", index, texture.describe(), image)
        return CompiledTexture.from_processed(image)

    # -----------------------------------------------------------------------
    # Materials, meshes, instances
    # -----------------------------------------------------------------------

    def _compile_material(self, index, material, resolver):
        try:
            return resolver.resolve(material)
        except SceneBakeError as e:
            _log.error("Material[%d] failed: %s", index, e)
            raise

    def _compile_mesh(self, index, mesh, default_material, materials, pool):
        try:
            material = mesh.material.get(materials)
            if material is None:
                material = default_material
            return self._pack_mesh(index, mesh, material, pool.get())
        except SceneBakeError as e:
            _log.error("Mesh[%d] failed: %s", index, e)
            raise

    def _pack_mesh(self, index, mesh, material, processor):
        positions = np.array(mesh.positions, dtype=np.float32, order='C')
        indices = np.array(mesh.indices, dtype=np.uint32, order='C')
        vertex_count = positions.shape[0]

        out = CompiledMesh(positions, bytearray(vertex_count * SHADING_ATTRIBUTE_SIZE), indices)
        if not vertex_count:
            if indices.size:
                raise BoundsError("Index[0] out of bounds for count: 0")
            _log.warning("Mesh[%d] has no vertices", index)
            return out

        processor.process_mesh(
            StridedRegion.from_array(positions),
            (StridedRegion.from_array(mesh.normals) if mesh.normals is not None
             else StridedRegion.empty('<f4', 3)),
            (StridedRegion.from_array(mesh.tex_coords) if mesh.tex_coords is not None
             else StridedRegion.empty('<f4', 2)),
            StridedRegion.from_array(indices),
            StridedRegion(out.shading_attributes, SHADING_ATTRIBUTE_SIZE, vertex_count, '<u4'),
            StridedRegion(out.shading_attributes, SHADING_ATTRIBUTE_SIZE, vertex_count, '<u4',
                          offset=4),
        )

        out.sub_meshes.append(SubMesh(
            vertex_offset=0,
            max_vertex=vertex_count - 1,
            first_index=0,
            index_count=indices.shape[0],
            material=material,
        ))
        return out

    def _compile_instance(self, index, instance, meshes):
        mesh = instance.mesh.get(meshes)
        if mesh is None:
            raise BoundsError(f"Instance[{index}] does not reference a mesh")
        return CompiledInstance(mesh, np.array(instance.transform, dtype=np.float32))


def _collect_textures(processed, resolver, materials):
    """Compiled texture list: processed textures in IR order, then the
    channel defaults, then synthesized pixels in first-use order."""
    textures = []
    seen = set()

    def add(texture):
        if id(texture) not in seen:
            seen.add(id(texture))
            textures.append(texture)

    for texture in processed:
        if texture is not None:
            add(texture)
    for texture in resolver.defaults.values():
        add(texture)
    for material in materials:
        for texture in material.textures():
            add(texture)
    return textures
