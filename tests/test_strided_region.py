import struct
import unittest

import numpy as np

from scenebake.errors import BoundsError
from scenebake.utils.strided_region import StridedRegion


class TestStridedRegionAccess(unittest.TestCase):
    def test_get_reads_interleaved_elements(self) -> None:
        # Two interleaved records: (float x, float y, float z, uint32 tag)
        buf = struct.pack("<3fI3fI", 1.0, 2.0, 3.0, 7, 4.0, 5.0, 6.0, 9)
        positions = StridedRegion(buf, 16, 2, "<f4", components=3)
        tags = StridedRegion(buf, 16, 2, "<u4", offset=12)

        self.assertEqual(positions.get(0), (1.0, 2.0, 3.0))
        self.assertEqual(positions.get(1), (4.0, 5.0, 6.0))
        self.assertEqual(tags.get(0), 7)
        self.assertEqual(tags.get(1), 9)

    def test_get_out_of_bounds_raises(self) -> None:
        region = StridedRegion.from_array(np.arange(4, dtype=np.uint32))

        with self.assertRaises(BoundsError) as ctx:
            region.get(4)
        self.assertIn("Index[4] out of bounds for count: 4", str(ctx.exception))
        with self.assertRaises(BoundsError):
            region.get(-1)

    def test_bounds_error_is_an_index_error(self) -> None:
        region = StridedRegion.from_array(np.zeros(2, dtype=np.float32))
        with self.assertRaises(IndexError):
            region.get(2)

    def test_set_writes_through_to_buffer(self) -> None:
        buf = bytearray(16)
        region = StridedRegion(buf, 8, 2, "<u4", offset=4)
        region.set(1, 0xDEADBEEF)

        self.assertEqual(struct.unpack_from("<I", buf, 12)[0], 0xDEADBEEF)
        self.assertEqual(bytes(buf[:12]), bytes(12))

    def test_set_on_read_only_buffer_raises(self) -> None:
        region = StridedRegion(bytes(8), 4, 2, "<u4")
        with self.assertRaises(BoundsError):
            region.set(0, 1)

    def test_as_array_is_zero_copy(self) -> None:
        data = np.zeros((3, 2), dtype=np.float32)
        region = StridedRegion.from_array(data)
        region.as_array()[1] = (5.0, 6.0)

        self.assertEqual(data[1].tolist(), [5.0, 6.0])
        self.assertEqual(region.as_array().shape, (3, 2))

    def test_take_gathers_and_checks_every_index(self) -> None:
        region = StridedRegion.from_array(np.array([[0, 1], [2, 3], [4, 5]], dtype=np.int32))

        np.testing.assert_array_equal(region.take([2, 0, 2]), [[4, 5], [0, 1], [4, 5]])
        with self.assertRaises(BoundsError):
            region.take([0, 3])


class TestStridedRegionConstruction(unittest.TestCase):
    def test_empty_region_is_falsy(self) -> None:
        region = StridedRegion.empty("<f4", 3)

        self.assertFalse(region)
        self.assertEqual(len(region), 0)
        self.assertEqual(region.as_array().shape, (0, 3))
        with self.assertRaises(BoundsError):
            region.get(0)

    def test_buffer_too_small_raises(self) -> None:
        with self.assertRaises(BoundsError):
            StridedRegion(bytearray(20), 8, 3, "<u4", offset=4)

    def test_stride_smaller_than_element_raises(self) -> None:
        with self.assertRaises(BoundsError):
            StridedRegion(bytearray(64), 4, 2, "<f4", components=3)

    def test_from_array_rejects_non_contiguous(self) -> None:
        data = np.zeros((4, 4), dtype=np.float32)[:, :3]
        with self.assertRaises(ValueError):
            StridedRegion.from_array(data)


if __name__ == "__main__":
    unittest.main()
