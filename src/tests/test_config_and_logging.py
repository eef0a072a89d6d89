"""
Test JSON configuration handling, the ring-buffer logger and the shared worker pool.
"""
from __future__ import annotations


import json
import logging


import pytest


from rtc_app.managers.config_manager import DEFAULT_ISODOSE_LEVELS, ConfigManager
from rtc_app.managers.shared_state_manager import SharedStateManager
from rtc_app.utils.general_utils import atomic_save, normalize_rgb_color, to_rgba
from rtc_app.utils.logger_utils import BufferHandler, get_buffer_handler, get_root_logger, start_root_logger


@pytest.fixture
def clean_root_logger():
    """Restore the root logger handlers and level after a test."""
    root_logger = logging.getLogger()
    handlers = list(root_logger.handlers)
    level = root_logger.level
    yield root_logger
    for handler in list(root_logger.handlers):
        if handler not in handlers:
            root_logger.removeHandler(handler)
            handler.close()
    root_logger.setLevel(level)


class TestConfigManager:
    """Test configuration defaults, persistence and validation."""

    def test_defaults(self, conf_mgr):
        levels = conf_mgr.get_isodose_levels()
        assert [level for level, _ in levels] == [item["level"] for item in DEFAULT_ISODOSE_LEVELS]
        assert levels[0] == (102, [170, 0, 0])
        assert conf_mgr.get_max_isodose_color() == [120, 0, 0]
        assert conf_mgr.get_isodose_fill_alpha() == 70
        assert conf_mgr.get_structure_fill_alpha() == 115
        assert conf_mgr.get_nearest_index_tolerance() == pytest.approx(0.001)
        assert conf_mgr.get_isodose_max_workers() == 0

    def test_update_is_persisted(self, tmp_path):
        config_dir = tmp_path / "config_files"
        conf_mgr = ConfigManager(config_dir=str(config_dir))
        assert conf_mgr.update_user_config({"isodose_fill_alpha": 90})
        assert conf_mgr.set_isodose_levels([{"level": 100, "color": [255, 0, 0]}])

        reloaded = ConfigManager(config_dir=str(config_dir))
        assert reloaded.get_isodose_fill_alpha() == 90
        assert reloaded.get_structure_fill_alpha() == 115
        assert reloaded.get_isodose_levels() == [(100, [255, 0, 0])]

    def test_wrong_type_falls_back_to_defaults(self, tmp_path):
        config_dir = tmp_path / "config_files"
        config_dir.mkdir()
        (config_dir / "user_config.json").write_text(json.dumps([1, 2, 3]), encoding="utf-8")
        (config_dir / "isodose_levels.json").write_text("{not json", encoding="utf-8")

        conf_mgr = ConfigManager(config_dir=str(config_dir))
        assert conf_mgr.get_isodose_fill_alpha() == 70
        assert len(conf_mgr.get_isodose_levels()) == len(DEFAULT_ISODOSE_LEVELS)

    def test_invalid_values(self, conf_mgr):
        assert not conf_mgr.update_user_config(["not", "a", "dict"])
        assert not conf_mgr.set_isodose_levels({"level": 100})
        conf_mgr.configs["user_config"]["nearest_index_tolerance"] = -1
        conf_mgr.configs["user_config"]["isodose_fill_alpha"] = "opaque"
        conf_mgr.configs["isodose_levels"] = [{"level": "x"}, {"level": 50}]
        assert conf_mgr.get_nearest_index_tolerance() == pytest.approx(0.001)
        assert conf_mgr.get_isodose_fill_alpha() == 70
        assert conf_mgr.get_isodose_levels() == [(50, [255, 255, 255])]


class TestColors:
    """Test color normalisation."""

    def test_normalize(self):
        assert normalize_rgb_color(["10", 300, -5]) == [10, 255, 0]
        assert normalize_rgb_color(None, default=[1, 2, 3]) == [1, 2, 3]
        assert len(normalize_rgb_color([1, 2])) == 3

    def test_to_rgba(self):
        assert to_rgba([255, 0, 0], 400) == (255, 0, 0, 255)

    def test_atomic_save(self, tmp_path):
        target = tmp_path / "nested" / "out.json"
        assert atomic_save(str(target), lambda file: file.write("{}"))
        assert target.read_text() == "{}"


class TestLogging:
    """Test the root logger setup."""

    def test_buffer_keeps_recent_messages(self, clean_root_logger):
        start_root_logger(logging.INFO, buffer_length=2)
        buffer_handler = get_buffer_handler()
        assert isinstance(buffer_handler, BufferHandler)

        logger = logging.getLogger("rtc_app.test")
        for message in ("first", "second", "third"):
            logger.info(message)
        logger.debug("hidden")

        messages = buffer_handler.get_messages()
        assert len(messages) == 2
        assert buffer_handler.get_latest_message().endswith("INFO - third")

        buffer_handler.clear_messages()
        assert buffer_handler.get_latest_message() == ""

    def test_no_duplicate_handlers(self, clean_root_logger):
        start_root_logger(logging.INFO)
        assert start_root_logger(logging.INFO) is get_root_logger()
        assert sum(isinstance(h, BufferHandler) for h in clean_root_logger.handlers) == 1

    def test_log_file(self, clean_root_logger, tmp_path):
        start_root_logger(logging.INFO, log_dir=str(tmp_path / "logs"))
        logging.getLogger("rtc_app.test").info("to file")
        for handler in clean_root_logger.handlers:
            handler.flush()
        log_files = list((tmp_path / "logs").glob("rtc_log_*.log"))
        assert len(log_files) == 1
        assert "to file" in log_files[0].read_text()


class TestSharedStateManager:
    """Test the bounded worker pool."""

    def test_worker_bounds(self):
        assert SharedStateManager(max_workers=1).num_workers == 1
        assert SharedStateManager().num_workers >= 1

    def test_submit_requires_executor(self):
        ss_mgr = SharedStateManager(max_workers=2)
        assert ss_mgr.submit_executor_action(sum, [1, 2]) is None

        ss_mgr.startup_executor()
        assert ss_mgr.submit_executor_action(sum, [1, 2]).result() == 3

        ss_mgr.shutdown_manager()
        assert not ss_mgr.has_executor
        assert ss_mgr.submit_executor_action(sum, [1, 2]) is None
