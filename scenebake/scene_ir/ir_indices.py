"""Typed optional indices between IR entities.

Every entity-to-entity reference in the IR is an index into one of the
Scene lists. Each target kind has its own index type so a material index
can never be used where a mesh index is expected. INVALID_INDEX (the
largest uint32) means "unset".
"""

from ..errors import BoundsError


INVALID_INDEX = 0xFFFFFFFF


class EntityIndex:
    """Optional index into a list of one entity kind.

    Indices are weak: nothing is checked at construction beyond the uint32
    range. get() checks the target list bound.
    """

    __slots__ = ('value',)

    target = "entity"

    def __init__(self, value=INVALID_INDEX):
        if isinstance(value, EntityIndex):
            if type(value) is not type(self):
                raise TypeError(
                    f"Cannot build a {type(self).__name__} from a {type(value).__name__}")
            value = value.value
        value = int(value)
        if value < 0 or value > INVALID_INDEX:
            raise ValueError(f"{type(self).__name__} out of uint32 range: {value}")
        self.value = value

    @classmethod
    def none(cls):
        return cls(INVALID_INDEX)

    @property
    def is_valid(self):
        return self.value != INVALID_INDEX

    def __bool__(self):
        return self.is_valid

    def __eq__(self, other):
        if type(other) is not type(self):
            return NotImplemented
        return self.value == other.value

    def __hash__(self):
        return hash((type(self).__name__, self.value))

    def __repr__(self):
        if not self.is_valid:
            return f"{type(self).__name__}(none)"
        return f"{type(self).__name__}({self.value})"

    def get(self, items):
        """Resolve against `items`.

        Returns:
            the referenced item, or None when the index is unset

        Raises:
            BoundsError: if the index is set but not less than len(items)
        """
        if not self.is_valid:
            return None
        if self.value >= len(items):
            raise BoundsError(
                f"{self.target.capitalize()}[{self.value}] out of bounds for count: {len(items)}")
        return items[self.value]


class TextureIndex(EntityIndex):
    __slots__ = ()
    target = "texture"


class MaterialIndex(EntityIndex):
    __slots__ = ()
    target = "material"


class MeshIndex(EntityIndex):
    __slots__ = ()
    target = "mesh"
