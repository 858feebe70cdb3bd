"""scenebake: compiles format-agnostic scene IR into render-ready buffers.

Parsers fill a scene_ir.Scene; SceneCompiler turns it into a CompiledScene
with packed geometry, block-compressed textures and deduplicated constant
textures.

    from scenebake import CompileSettings, SceneCompiler

    compiled = SceneCompiler(CompileSettings.from_env()).compile(scene)
"""

from .compiler.compiled_scene import (
    CompiledInstance, CompiledMaterial, CompiledMesh, CompiledScene, CompiledTexture, SubMesh,
)
from .compiler.scene_compiler import SceneCompiler
from .errors import BoundsError, ConfigurationError, DecodeError, MissingFileError, SceneBakeError
from .settings import CompileSettings

__version__ = "0.1.0"
