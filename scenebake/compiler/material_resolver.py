"""Resolution of IR materials into five-channel compiled materials.

Each channel is resolved in priority order:

    1. a texture swizzle referencing a processed, non-empty texture
    2. a constant value (vec4, vec3, vec2 or scalar), baked into a
       single-pixel RGBA8 texture
    3. the channel default

Single-pixel textures are deduplicated per compile by their packed RGBA8
value, so equal constants always resolve to the same CompiledTexture.
"""

import struct
import threading

from ..scene_ir.ir_materials import PropertyKind, ValueType
from .compiled_scene import CompiledMaterial, CompiledTexture


DEFAULT_ALPHA_CUTOFF = 0.5
DEFAULT_METALLIC = 0.0
DEFAULT_ROUGHNESS = 0.5

# Slot name -> fallback RGBA
CHANNEL_DEFAULTS = {
    'base_color': (1.0, 0.0, 1.0, 1.0),
    'normal': (0.5, 0.5, 1.0, 1.0),
    'metal_rough': (0.0, 0.5, 0.0, 1.0),
    'emissive': (0.0, 0.0, 0.0, 1.0),
    'transmission': (0.0, 0.0, 0.0, 1.0),
}

# Slot name -> property kind for the channels resolved generically
CHANNEL_PROPERTIES = {
    'base_color': PropertyKind.BASE_COLOR,
    'normal': PropertyKind.NORMAL,
    'emissive': PropertyKind.EMISSIVE,
    'transmission': PropertyKind.TRANSMISSION,
}


def _unorm8(v):
    v = float(v)
    # NaN compares false
    if not v >= 0.0:
        return 0
    if v >= 1.0:
        return 255
    return int(v * 255.0)


def pack_rgba8(rgba):
    """Pack 4 floats in [0, 1] into a little-endian uint32 (R in the low byte)."""
    r, g, b, a = (_unorm8(c) for c in rgba)
    return r | (g << 8) | (b << 16) | (a << 24)


def constant_to_rgba(value, value_type):
    """Expand a constant property value to an RGBA tuple.

    vec4 is used as is, vec3 gets alpha 1, vec2 is padded with 0 and alpha 1,
    and a scalar is broadcast to RGB with alpha 1.
    """
    if value_type is ValueType.VEC4:
        return tuple(float(c) for c in value)
    if value_type is ValueType.VEC3:
        return (float(value[0]), float(value[1]), float(value[2]), 1.0)
    if value_type is ValueType.VEC2:
        return (float(value[0]), float(value[1]), 0.0, 1.0)
    if value_type is ValueType.SCALAR:
        v = float(value)
        return (v, v, v, 1.0)
    raise TypeError(f"Not a constant value type: {value_type}")


_CONSTANT_TYPES = (ValueType.VEC4, ValueType.VEC3, ValueType.VEC2, ValueType.SCALAR)


class PixelTextureCache:
    """Thread-safe map from packed RGBA8 value to its single-pixel texture.

    get() inserts on first use and returns the stored texture afterwards,
    so callers racing on the same value receive the same object.
    """

    def __init__(self):
        self._textures = {}
        self._lock = threading.Lock()

    def get(self, rgba):
        key = pack_rgba8(rgba)
        with self._lock:
            texture = self._textures.get(key)
            if texture is None:
                texture = CompiledTexture.single_pixel(struct.pack('<I', key))
                self._textures[key] = texture
            return texture

    def __len__(self):
        with self._lock:
            return len(self._textures)


class MaterialResolver:
    """Builds CompiledMaterials against one compile's processed textures.

    Args:
        textures: list indexed by IR texture index holding the processed
            CompiledTexture, or None where the texture was not processed
            or failed to load
        pixels: PixelTextureCache shared by every material of the compile
    """

    def __init__(self, textures, pixels):
        self.textures = textures
        self.pixels = pixels
        self.defaults = {slot: pixels.get(rgba) for slot, rgba in CHANNEL_DEFAULTS.items()}

    def default_material(self):
        return CompiledMaterial(**self.defaults)

    def _processed(self, swizzle):
        """Processed texture behind a swizzle, or None when unusable."""
        if swizzle is None:
            return None
        texture = swizzle.texture.get(self.textures)
        if texture is None or texture.is_empty:
            return None
        return texture

    def resolve_channel(self, material, slot):
        kind = CHANNEL_PROPERTIES[slot]
        texture = self._processed(material.texture(kind))
        if texture is not None:
            return texture

        for value_type in _CONSTANT_TYPES:
            value = material.get(kind, value_type)
            if value is not None:
                return self.pixels.get(constant_to_rgba(value, value_type))

        return self.defaults[slot]

    def resolve_metal_rough(self, material):
        metallic = self._processed(material.texture(PropertyKind.METALLIC))
        specular = self._processed(material.texture(PropertyKind.SPECULAR_COLOR))
        if metallic is not None and metallic is specular:
            return metallic

        # With neither factor present this is the channel default pixel
        metalness = material.scalar(PropertyKind.METALLIC, DEFAULT_METALLIC)
        roughness = material.scalar(PropertyKind.ROUGHNESS, DEFAULT_ROUGHNESS)
        return self.pixels.get((metalness, roughness, 0.0, 1.0))

    def resolve(self, material):
        """Compile one IR material."""
        out = CompiledMaterial(
            base_color=self.resolve_channel(material, 'base_color'),
            normal=self.resolve_channel(material, 'normal'),
            metal_rough=self.resolve_metal_rough(material),
            emissive=self.resolve_channel(material, 'emissive'),
            transmission=self.resolve_channel(material, 'transmission'),
        )
        out.alpha_cutoff = material.scalar(PropertyKind.ALPHA_CUTOFF, DEFAULT_ALPHA_CUTOFF)
        out.alpha_mask = (material.flag(PropertyKind.ALPHA_MASK)
                          or out.base_color.min_alpha < out.alpha_cutoff)
        out.alpha_blend = material.flag(PropertyKind.ALPHA_BLEND)
        return out
