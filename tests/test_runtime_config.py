from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

import yaml

from config.defaults import DUAL_HOMED_COLLECTIONS
from config.runtime import describe_config
from config.runtime import load_runtime_config
from config.runtime import load_yaml_overrides
from config.runtime import parse_id_set


class RuntimeConfigTests(unittest.TestCase):
    def test_defaults(self):
        cfg = load_runtime_config({})
        self.assertEqual(cfg.storage_mode, "auto")
        self.assertFalse(cfg.force_file_mode)
        self.assertEqual(cfg.data_dir, "./data")
        self.assertEqual(cfg.cache_ttl_seconds, 300)
        self.assertEqual(cfg.sync_interval_seconds, 300)
        self.assertEqual(cfg.dual_homed_collections, DUAL_HOMED_COLLECTIONS)
        self.assertEqual((cfg.scheduler_floor_seconds, cfg.scheduler_ceiling_seconds), (10, 300))
        self.assertEqual(cfg.scheduler_idle_seconds, 60)
        self.assertEqual(cfg.scheduler_concurrency, 5)
        self.assertIsNone(cfg.discord_token)

    def test_env_overrides(self):
        cfg = load_runtime_config(
            {
                "ROLE_REACTOR_STORAGE_MODE": "FILE",
                "ROLE_REACTOR_DATA_DIR": "/tmp/rr",
                "ROLE_REACTOR_CACHE_TTL_SECONDS": "30",
                "ROLE_REACTOR_SCHEDULER_CONCURRENCY": "2",
                "ROLE_REACTOR_OWNER_IDS": "1, 2;3 nope",
                "DISCORD_TOKEN": "tok",
            }
        )
        self.assertTrue(cfg.force_file_mode)
        self.assertEqual(cfg.data_dir, "/tmp/rr")
        self.assertEqual(cfg.cache_ttl_seconds, 30)
        self.assertEqual(cfg.scheduler_concurrency, 2)
        self.assertEqual(cfg.owner_user_ids, {1, 2, 3})
        self.assertEqual(cfg.discord_token, "tok")

    def test_invalid_values_fall_back(self):
        cfg = load_runtime_config(
            {
                "ROLE_REACTOR_STORAGE_MODE": "cloud",
                "ROLE_REACTOR_CACHE_TTL_SECONDS": "soon",
                "ROLE_REACTOR_SCHEDULER_CONCURRENCY": "0",
                "ROLE_REACTOR_SCHEDULER_FLOOR_SECONDS": "500",
                "ROLE_REACTOR_SCHEDULER_CEILING_SECONDS": "100",
            }
        )
        self.assertEqual(cfg.storage_mode, "auto")
        self.assertEqual(cfg.cache_ttl_seconds, 300)
        self.assertEqual(cfg.scheduler_concurrency, 5)
        self.assertEqual((cfg.scheduler_floor_seconds, cfg.scheduler_ceiling_seconds), (10, 300))

    def test_yaml_file_supplies_storage_and_scheduler(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "role_reactor.yaml"
            path.write_text(
                yaml.safe_dump(
                    {
                        "storage": {
                            "mode": "file",
                            "db_path": "custom.db",
                            "dual_homed_collections": ["polls", "polls", "core_credit"],
                        },
                        "scheduler": {"floor_seconds": 15, "idle_seconds": 90},
                    }
                ),
                encoding="utf-8",
            )
            cfg = load_runtime_config(
                {
                    "ROLE_REACTOR_CONFIG_PATH": str(path),
                    "ROLE_REACTOR_SCHEDULER_IDLE_SECONDS": "45",
                }
            )

        self.assertEqual(cfg.storage_mode, "file")
        self.assertEqual(cfg.db_path, "custom.db")
        self.assertEqual(cfg.dual_homed_collections, ("polls", "core_credit"))
        self.assertEqual(cfg.scheduler_floor_seconds, 15)
        # env beats the file
        self.assertEqual(cfg.scheduler_idle_seconds, 45)

    def test_bad_yaml_is_ignored(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "broken.yaml"
            path.write_text("storage: [unclosed", encoding="utf-8")
            self.assertEqual(load_yaml_overrides(str(path)), {})

            listing = Path(tmp) / "list.yaml"
            listing.write_text("- a\n- b\n", encoding="utf-8")
            self.assertEqual(load_yaml_overrides(str(listing)), {})

        self.assertEqual(load_yaml_overrides(None), {})
        self.assertEqual(load_yaml_overrides("/definitely/not/here.yaml"), {})

    def test_parse_id_set(self):
        self.assertEqual(parse_id_set(""), set())
        self.assertEqual(parse_id_set("10 20,30"), {10, 20, 30})

    def test_describe_config(self):
        text = describe_config(load_runtime_config({}))
        self.assertTrue(text.startswith("[CFG] storage_mode=auto"))


if __name__ == "__main__":
    unittest.main()
