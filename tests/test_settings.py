import unittest
from unittest import mock

from scenebake.errors import ConfigurationError
from scenebake.settings import (
    DEFAULT_CACHE_DIR, DEFAULT_MAX_TEXTURE_DIM, CompileSettings, debug_enabled,
)


class TestCompileSettings(unittest.TestCase):
    def test_defaults(self) -> None:
        settings = CompileSettings()

        self.assertEqual(settings.max_texture_dim, DEFAULT_MAX_TEXTURE_DIM)
        self.assertEqual(settings.cache_dir, DEFAULT_CACHE_DIR)
        self.assertFalse(settings.flip_uvs)
        self.assertFalse(settings.flip_normal_map_z)
        self.assertTrue(settings.compress_textures)
        self.assertFalse(settings.generate_mips)
        self.assertTrue(settings.use_cache)
        self.assertIsNone(settings.max_workers)

    def test_invalid_values_raise(self) -> None:
        with self.assertRaises(ConfigurationError):
            CompileSettings(max_texture_dim=0)
        with self.assertRaises(ConfigurationError):
            CompileSettings(max_workers=0)
        with self.assertRaises(ConfigurationError):
            CompileSettings(cache_dir="")

    def test_configuration_error_is_a_value_error(self) -> None:
        with self.assertRaises(ValueError):
            CompileSettings(max_texture_dim=-4)

    def test_empty_cache_dir_allowed_without_cache(self) -> None:
        settings = CompileSettings(use_cache=False, cache_dir="")
        self.assertFalse(settings.use_cache)


class TestFromEnv(unittest.TestCase):
    def test_overrides(self) -> None:
        settings = CompileSettings.from_env(environ={
            "SCENEBAKE_CACHE_DIR": "/tmp/texcache",
            "SCENEBAKE_MAX_TEXTURE_DIM": "512",
            "SCENEBAKE_WORKERS": "3",
            "SCENEBAKE_NO_CACHE": "1",
        })

        self.assertEqual(settings.cache_dir, "/tmp/texcache")
        self.assertEqual(settings.max_texture_dim, 512)
        self.assertEqual(settings.max_workers, 3)
        self.assertFalse(settings.use_cache)

    def test_base_settings_are_kept(self) -> None:
        base = CompileSettings(flip_uvs=True, max_texture_dim=64)
        settings = CompileSettings.from_env(base, environ={"SCENEBAKE_WORKERS": "2"})

        self.assertTrue(settings.flip_uvs)
        self.assertEqual(settings.max_texture_dim, 64)
        self.assertEqual(settings.max_workers, 2)
        self.assertIsNone(base.max_workers)

    def test_unparseable_value_raises(self) -> None:
        with self.assertRaises(ConfigurationError) as ctx:
            CompileSettings.from_env(environ={"SCENEBAKE_MAX_TEXTURE_DIM": "big"})
        self.assertIn("SCENEBAKE_MAX_TEXTURE_DIM", str(ctx.exception))

    def test_out_of_range_value_raises(self) -> None:
        with self.assertRaises(ConfigurationError):
            CompileSettings.from_env(environ={"SCENEBAKE_WORKERS": "0"})

    def test_debug_flag(self) -> None:
        with mock.patch.dict("os.environ", {"SCENEBAKE_DEBUG": "1"}):
            self.assertTrue(debug_enabled())
        with mock.patch.dict("os.environ", {"SCENEBAKE_DEBUG": "0"}):
            self.assertFalse(debug_enabled())


if __name__ == "__main__":
    unittest.main()
