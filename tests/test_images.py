import io
import os
import struct
import tempfile
import unittest
from unittest import mock

import numpy as np
from PIL import Image

from scenebake.errors import ConfigurationError, DecodeError, MissingFileError
from scenebake.processing.image_cache import (
    HEADER_FORMAT, HEADER_SIZE, PATH_LOCK_COUNT, CacheHeader, TextureCache,
    cache_key, path_lock,
)
from scenebake.processing.images import (
    EMBEDDED_SOURCE, RAW_SOURCE, ImageProcess, ImageProcessor, TextureFormat,
    alpha_range, downsample_to_fit,
)
from scenebake.utils.dxt_compress import compressed_size, mip_level_count


def _pixels(width, height, seed=0):
    rng = np.random.default_rng(seed)
    return rng.integers(0, 256, size=(height, width, 4), dtype=np.uint8)


def _png_bytes(pixels):
    buf = io.BytesIO()
    Image.fromarray(pixels).save(buf, format="PNG")
    return buf.getvalue()


class _TempDirTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = self._tmp.name
        self.cache_dir = os.path.join(self.tmp, "cache")

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def write_png(self, name, pixels):
        path = os.path.join(self.tmp, name)
        Image.fromarray(pixels).save(path)
        return path


class TestPixelOperations(unittest.TestCase):
    def test_downsample_uses_integer_factor_and_drops_remainder(self) -> None:
        pixels = np.zeros((6, 9, 4), dtype=np.uint8)
        pixels[:, :, 0] = np.arange(9, dtype=np.uint8)[None, :] * 10

        out = downsample_to_fit(pixels, 4)

        # factor = max(9 // 4, 6 // 4) = 2; column 8 is dropped
        self.assertEqual(out.shape, (3, 4, 4))
        self.assertEqual(out[0, :, 0].tolist(), [5, 25, 45, 65])

    def test_downsample_floors_the_mean(self) -> None:
        pixels = np.zeros((2, 2, 4), dtype=np.uint8)
        pixels[0, 0, 1] = 3
        out = downsample_to_fit(pixels, 1)
        self.assertEqual(out.shape, (1, 1, 4))
        self.assertEqual(int(out[0, 0, 1]), 0)

    def test_downsample_leaves_small_images(self) -> None:
        pixels = _pixels(4, 4)
        self.assertIs(downsample_to_fit(pixels, 4), pixels)

    def test_downsample_factor_one_keeps_size(self) -> None:
        pixels = _pixels(5, 5)
        self.assertEqual(downsample_to_fit(pixels, 4).shape, (5, 5, 4))

    def test_alpha_range(self) -> None:
        pixels = np.full((2, 2, 4), 255, dtype=np.uint8)
        pixels[1, 0, 3] = 0
        pixels[0, 1, 3] = 128
        lo, hi = alpha_range(pixels)
        self.assertEqual(lo, 0.0)
        self.assertEqual(hi, 1.0)

        pixels[1, 0, 3] = 128
        lo, _ = alpha_range(pixels)
        self.assertAlmostEqual(lo, 128 / 255, places=6)


class TestProcessImage(_TempDirTestCase):
    def test_uncompressed_file_keeps_pixels(self) -> None:
        pixels = _pixels(8, 4)
        path = self.write_png("a.png", pixels)

        image = ImageProcessor(self.cache_dir).process_image(
            path, compress=False, use_cache=False)

        self.assertEqual((image.width, image.height), (8, 4))
        self.assertEqual(image.format, TextureFormat.RGBA8_UNORM)
        self.assertEqual(image.data, pixels.tobytes())
        self.assertAlmostEqual(image.min_alpha, pixels[:, :, 3].min() / 255, places=6)
        self.assertAlmostEqual(image.max_alpha, pixels[:, :, 3].max() / 255, places=6)
        self.assertEqual(image.mip_levels, 1)

    def test_compressed_payload_is_bc3(self) -> None:
        path = self.write_png("a.png", _pixels(12, 8))
        image = ImageProcessor(self.cache_dir).process_image(path, use_cache=False)

        self.assertEqual(image.format, TextureFormat.BC3_UNORM)
        self.assertEqual(len(image.data), compressed_size(12, 8))

    def test_large_image_is_downsampled(self) -> None:
        path = self.write_png("big.png", _pixels(16, 8))
        image = ImageProcessor(self.cache_dir).process_image(
            path, max_dim=4, compress=False, use_cache=False)
        self.assertEqual((image.width, image.height), (4, 2))

    def test_flip_normal_z_inverts_blue(self) -> None:
        pixels = _pixels(4, 4)
        path = self.write_png("n.png", pixels)
        image = ImageProcessor(self.cache_dir).process_image(
            path, processes=ImageProcess.FLIP_NORMAL_Z, compress=False, use_cache=False)

        out = np.frombuffer(image.data, dtype=np.uint8).reshape(4, 4, 4)
        np.testing.assert_array_equal(out[:, :, 2], 255 - pixels[:, :, 2])
        np.testing.assert_array_equal(out[:, :, :2], pixels[:, :, :2])

    def test_alpha_not_tracked_without_flag(self) -> None:
        path = self.write_png("a.png", _pixels(4, 4))
        image = ImageProcessor(self.cache_dir).process_image(
            path, processes=ImageProcess.NONE, use_cache=False)
        self.assertEqual((image.min_alpha, image.max_alpha), (1.0, 0.0))

    def test_mip_chain_is_appended(self) -> None:
        path = self.write_png("a.png", _pixels(8, 8))
        image = ImageProcessor(self.cache_dir).process_image(
            path, processes=ImageProcess.GEN_MIPS, use_cache=False)

        self.assertEqual(image.mip_levels, mip_level_count(8, 8))
        expected = sum(compressed_size(max(1, 8 >> i), max(1, 8 >> i))
                       for i in range(image.mip_levels))
        self.assertEqual(len(image.data), expected)

    def test_embedded_image(self) -> None:
        pixels = _pixels(4, 4)
        image = ImageProcessor(self.cache_dir).process_image(
            _png_bytes(pixels), compress=False, use_cache=False)
        self.assertEqual(image.data, pixels.tobytes())

    def test_raw_pixels(self) -> None:
        pixels = _pixels(2, 3)
        image = ImageProcessor(self.cache_dir).process_image(
            pixels.tobytes(), compress=False, use_cache=False, raw_size=(2, 3))
        self.assertEqual((image.width, image.height), (2, 3))
        self.assertEqual(image.data, pixels.tobytes())

    def test_raw_pixels_with_wrong_size_raise(self) -> None:
        with self.assertRaises(DecodeError) as ctx:
            ImageProcessor(self.cache_dir).process_image(
                bytes(10), use_cache=False, raw_size=(2, 2))
        self.assertEqual(ctx.exception.source, RAW_SOURCE)

    def test_undecodable_bytes_raise_decode_error(self) -> None:
        with self.assertRaises(DecodeError) as ctx:
            ImageProcessor(self.cache_dir).process_image(
                b"definitely not an image", use_cache=False)
        self.assertEqual(ctx.exception.source, EMBEDDED_SOURCE)

    def test_undecodable_file_raises_decode_error(self) -> None:
        path = os.path.join(self.tmp, "broken.png")
        with open(path, "wb") as f:
            f.write(b"\x89PNG garbage")
        with self.assertRaises(DecodeError) as ctx:
            ImageProcessor(self.cache_dir).process_image(path)
        self.assertEqual(ctx.exception.source, os.path.realpath(path))

    def test_missing_file(self) -> None:
        path = os.path.join(self.tmp, "missing.png")
        with self.assertRaises(MissingFileError) as ctx:
            ImageProcessor(self.cache_dir).process_image(path)
        self.assertIsInstance(ctx.exception, FileNotFoundError)
        self.assertEqual(ctx.exception.source, path)

    def test_caching_embedded_source_is_a_configuration_error(self) -> None:
        with self.assertRaises(ConfigurationError):
            ImageProcessor(self.cache_dir).process_image(_png_bytes(_pixels(4, 4)))

    def test_non_positive_max_dim_is_a_configuration_error(self) -> None:
        path = self.write_png("a.png", _pixels(4, 4))
        with self.assertRaises(ConfigurationError):
            ImageProcessor(self.cache_dir).process_image(path, max_dim=0)


class TestImageCache(_TempDirTestCase):
    def test_second_request_is_served_from_cache(self) -> None:
        path = self.write_png("a.png", _pixels(8, 8))
        processor = ImageProcessor(self.cache_dir)

        with mock.patch("scenebake.processing.images.Image.open", wraps=Image.open) as opened:
            first = processor.process_image(path)
            second = processor.process_image(path)

        self.assertEqual(opened.call_count, 1)
        self.assertEqual(processor.decode_count, 1)
        self.assertEqual(processor.cache_hits, 1)
        self.assertFalse(first.from_cache)
        self.assertTrue(second.from_cache)
        self.assertEqual(first.data, second.data)
        self.assertEqual((first.min_alpha, first.max_alpha),
                         (second.min_alpha, second.max_alpha))

    def test_cache_is_shared_between_processors(self) -> None:
        path = self.write_png("a.png", _pixels(8, 8))
        ImageProcessor(self.cache_dir).process_image(path)

        other = ImageProcessor(self.cache_dir)
        image = other.process_image(path)

        self.assertTrue(image.from_cache)
        self.assertEqual(other.decode_count, 0)

    def test_parameters_are_part_of_the_key(self) -> None:
        path = self.write_png("a.png", _pixels(8, 8))
        processor = ImageProcessor(self.cache_dir)

        processor.process_image(path)
        processor.process_image(path, processes=ImageProcess.FLIP_NORMAL_Z)
        processor.process_image(path, max_dim=4)
        processor.process_image(path, compress=False)

        self.assertEqual(processor.decode_count, 4)
        self.assertEqual(len(os.listdir(self.cache_dir)), 4)

    def test_cache_file_layout(self) -> None:
        pixels = _pixels(4, 2)
        path = self.write_png("a.png", pixels)
        image = ImageProcessor(self.cache_dir).process_image(path, compress=False)

        key = cache_key(os.path.realpath(path), ImageProcess.TRACK_ALPHA, 4096, False)
        cache_path = TextureCache(self.cache_dir).path_for(key)
        with open(cache_path, "rb") as f:
            data = f.read()

        width, height, fmt, _, _, size = struct.unpack_from(HEADER_FORMAT, data)
        self.assertEqual(HEADER_SIZE, 24)
        self.assertEqual((width, height, fmt), (4, 2, int(TextureFormat.RGBA8_UNORM)))
        self.assertEqual(size, len(image.data))
        self.assertEqual(data[HEADER_SIZE:], image.data)

    def test_truncated_cache_file_is_regenerated(self) -> None:
        path = self.write_png("a.png", _pixels(8, 8))
        processor = ImageProcessor(self.cache_dir)
        processor.process_image(path)

        cache_path = os.path.join(self.cache_dir, os.listdir(self.cache_dir)[0])
        with open(cache_path, "r+b") as f:
            f.truncate(HEADER_SIZE + 3)

        with self.assertLogs("scenebake.cache", level="WARNING"):
            image = processor.process_image(path)
        self.assertFalse(image.from_cache)
        self.assertEqual(processor.decode_count, 2)

    def test_unknown_format_tag_is_regenerated(self) -> None:
        path = self.write_png("a.png", _pixels(8, 8))
        processor = ImageProcessor(self.cache_dir)
        first = processor.process_image(path)

        cache_path = os.path.join(self.cache_dir, os.listdir(self.cache_dir)[0])
        with open(cache_path, "r+b") as f:
            f.seek(8)
            f.write(struct.pack("<I", 999))

        with self.assertLogs("scenebake.cache", level="WARNING") as logs:
            image = processor.process_image(path)
        self.assertTrue(any("unknown format tag 999" in line for line in logs.output))
        self.assertFalse(image.from_cache)
        self.assertEqual(image.format, first.format)
        self.assertEqual(processor.cache_hits, 0)
        self.assertEqual(processor.decode_count, 2)

        # The rewritten entry is usable again
        self.assertTrue(processor.process_image(path).from_cache)

    def test_path_locks_are_bounded(self) -> None:
        locks = {id(path_lock(os.path.join(self.cache_dir, f"{i}.tex"))) for i in range(1000)}
        self.assertLessEqual(len(locks), PATH_LOCK_COUNT)
        self.assertIs(path_lock(os.path.join(self.cache_dir, "x.tex")),
                      path_lock(os.path.join(self.cache_dir, "x.tex")))

    def test_cache_miss_is_logged(self) -> None:
        path = self.write_png("a.png", _pixels(4, 4))
        with self.assertLogs("scenebake.images", level="INFO") as logs:
            ImageProcessor(self.cache_dir).process_image(path)
        self.assertTrue(any("not cached, generating" in line for line in logs.output))

    def test_header_round_trip(self) -> None:
        header = CacheHeader(3, 5, 77, 0.25, 0.75, 99)
        parsed = CacheHeader.unpack(header.pack())
        self.assertEqual(
            (parsed.width, parsed.height, parsed.format, parsed.min_alpha,
             parsed.max_alpha, parsed.size),
            (3, 5, 77, 0.25, 0.75, 99))

    def test_cache_key_is_deterministic(self) -> None:
        a = cache_key("/x/a.png", ImageProcess.TRACK_ALPHA, 4096, True)
        self.assertEqual(a, cache_key("/x/a.png", ImageProcess.TRACK_ALPHA, 4096, True))
        self.assertNotEqual(a, cache_key("/x/a.png", ImageProcess.TRACK_ALPHA, 4096, False))
        self.assertNotEqual(a, cache_key("/x/b.png", ImageProcess.TRACK_ALPHA, 4096, True))


if __name__ == "__main__":
    unittest.main()
