"""IR materials: ordered property bags keyed by a closed set of kinds.

A property value is one of:

    TextureSwizzle        texture reference + source channel selectors
    float                 scalar
    (x, y)                vec2
    (x, y, z)             vec3
    (x, y, z, w)          vec4
    bool                  flag

Materials are looked up by (kind, value type). A parser may emit several
properties of the same kind with different value types (for instance a
base-color texture and a base-color factor); each lookup returns the first
property matching both.

numpy scalars and 1-D arrays are accepted and stored as their Python
equivalents.
"""

import enum
import numbers
from dataclasses import dataclass, field
from typing import List, Tuple

import numpy as np

from .ir_indices import TextureIndex


class PropertyKind(enum.Enum):
    """Semantic property names recognized by the scene compiler."""

    BASE_COLOR = "base-color"
    NORMAL = "normal"
    METALLIC = "metallic"
    ROUGHNESS = "roughness"
    SPECULAR_COLOR = "specular-color"
    EMISSIVE = "emissive"
    TRANSMISSION = "transmission"
    ALPHA_CUTOFF = "alpha-cutoff"
    ALPHA_MASK = "alpha-mask"
    ALPHA_BLEND = "alpha-blend"


class ValueType(enum.Enum):
    TEXTURE = "texture"
    SCALAR = "scalar"
    VEC2 = "vec2"
    VEC3 = "vec3"
    VEC4 = "vec4"
    BOOL = "bool"


_VECTOR_TYPES = {2: ValueType.VEC2, 3: ValueType.VEC3, 4: ValueType.VEC4}


@dataclass(frozen=True)
class TextureSwizzle:
    """Reference to an IR texture plus the source channel feeding each output.

    channels[i] is the source channel index for output channel i, or -1
    when unused. Channel selectors are carried through the IR; the compiler
    uses the referenced texture as-is.
    """

    texture: TextureIndex = field(default_factory=TextureIndex.none)
    channels: Tuple[int, int, int, int] = (-1, -1, -1, -1)

    def __post_init__(self):
        if not isinstance(self.texture, TextureIndex):
            object.__setattr__(self, 'texture', TextureIndex(self.texture))
        if len(self.channels) != 4:
            raise ValueError(f"TextureSwizzle needs 4 channel selectors, got {self.channels!r}")


def value_type_of(value):
    """Classify a property value.

    Raises:
        TypeError: for values outside the property sum type
    """
    if isinstance(value, TextureSwizzle):
        return ValueType.TEXTURE
    # bool first: it is an int subclass
    if isinstance(value, (bool, np.bool_)):
        return ValueType.BOOL
    if isinstance(value, numbers.Real):
        return ValueType.SCALAR
    if isinstance(value, (tuple, list)) or (isinstance(value, np.ndarray) and value.ndim == 1):
        value_type = _VECTOR_TYPES.get(len(value))
        if value_type is not None:
            return value_type
    raise TypeError(f"Unsupported property value: {value!r}")


@dataclass(frozen=True)
class Property:
    kind: PropertyKind
    value: object

    def __post_init__(self):
        if not isinstance(self.kind, PropertyKind):
            object.__setattr__(self, 'kind', PropertyKind(self.kind))
        value = self.value
        # numpy values are stored as plain Python scalars and tuples
        if isinstance(value, np.generic) or (isinstance(value, np.ndarray) and value.ndim == 0):
            value = value.item()
        elif isinstance(value, np.ndarray) and value.ndim == 1:
            value = tuple(value.tolist())
        elif isinstance(value, list):
            value = tuple(value)
        object.__setattr__(self, 'value', value)
        value_type_of(self.value)

    @property
    def value_type(self):
        return value_type_of(self.value)


@dataclass
class Material:
    """Ordered list of properties."""

    properties: List[Property] = field(default_factory=list)
    name: str = ""

    def add(self, kind, value):
        """Append a property and return self (for chaining in parsers/tests)."""
        self.properties.append(Property(kind, value))
        return self

    def get(self, kind, value_type):
        """First value of `kind` whose type is `value_type`, else None."""
        for prop in self.properties:
            if prop.kind is kind and prop.value_type is value_type:
                return prop.value
        return None

    def texture(self, kind):
        return self.get(kind, ValueType.TEXTURE)

    def scalar(self, kind, default=None):
        value = self.get(kind, ValueType.SCALAR)
        return default if value is None else float(value)

    def flag(self, kind, default=False):
        value = self.get(kind, ValueType.BOOL)
        return default if value is None else value

    def referenced_textures(self):
        """(kind, TextureIndex) for every texture property, in order."""
        return [(prop.kind, prop.value.texture) for prop in self.properties
                if isinstance(prop.value, TextureSwizzle) and prop.value.texture.is_valid]
