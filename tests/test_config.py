from __future__ import annotations

import logging
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import sentinel_mirror
from sentinel_mirror import (
    ColorizingFormatter,
    EventKind,
    WatchEvent,
    build_effective_config,
    log_action,
    parse_args,
    validate_paths,
)


class ParseArgsTests(unittest.TestCase):
    def test_positional_arguments(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            args = parse_args(["/srv/source/READY", "/srv/target", "--debug"])

        cfg = build_effective_config(args)
        self.assertEqual(cfg.source_dir, Path("/srv/source"))
        self.assertEqual(cfg.sentinel_name, "READY")
        self.assertEqual(cfg.target_dir, Path("/srv/target"))
        self.assertTrue(cfg.debug)
        self.assertIsNone(cfg.log_dir)
        self.assertEqual(cfg.check_interval_sec, sentinel_mirror.DEFAULT_CHECK_INTERVAL_SEC)

    def test_environment_supplies_defaults(self) -> None:
        env = {
            "COMPONENT_SENTINEL_PATH": "/opt/content/.complete",
            "COMPONENT_TARGET": "/srv/target",
            "DEBUG": "true",
            "COMPONENT_LOG_DIR": "/var/log/mirror",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            cfg = build_effective_config(parse_args([]))

        self.assertEqual(cfg.source_dir, Path("/opt/content"))
        self.assertEqual(cfg.sentinel_name, ".complete")
        self.assertTrue(cfg.debug)
        self.assertEqual(cfg.log_dir, Path("/var/log/mirror"))

    def test_missing_target_is_a_usage_error(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            with mock.patch("sys.stderr"), self.assertRaises(SystemExit) as ctx:
                parse_args(["/srv/source/READY"])
        self.assertEqual(ctx.exception.code, 2)

    def test_check_interval_is_clamped(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            cfg = build_effective_config(parse_args(["/s/READY", "/t", "--check-interval", "0"]))
        self.assertEqual(cfg.check_interval_sec, sentinel_mirror.MIN_CHECK_INTERVAL_SEC)


class ValidatePathsTests(unittest.TestCase):
    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.base = Path(tmp.name).resolve()
        self.source = self.base / "source"
        self.target = self.base / "target"
        self.source.mkdir()
        self.target.mkdir()

    def test_valid_pair_is_resolved(self) -> None:
        source, target = validate_paths(self.source, "READY", self.target)
        self.assertEqual((source, target), (self.source, self.target))

    def test_rejected_configurations(self) -> None:
        (self.base / "file.txt").write_text("x", encoding="utf-8")
        (self.source / "nested").mkdir()
        cases = {
            "missing source": (self.base / "nope", "READY", self.target),
            "missing target": (self.source, "READY", self.base / "nope"),
            "target is a file": (self.source, "READY", self.base / "file.txt"),
            "same folder": (self.source, "READY", self.source),
            "target inside source": (self.source, "READY", self.source / "nested"),
            "source inside target": (self.source, "READY", self.base),
            "empty sentinel name": (self.source, "", self.target),
            "dot sentinel name": (self.source, "..", self.target),
            "separator in sentinel name": (self.source, "a/READY", self.target),
        }
        for label, (source, name, target) in cases.items():
            with self.subTest(label):
                with self.assertRaises(ValueError):
                    validate_paths(source, name, target)

    def test_target_is_never_created(self) -> None:
        missing = self.base / "new-target"
        with self.assertRaises(ValueError):
            validate_paths(self.source, "READY", missing)
        self.assertFalse(missing.exists())


class LoggingTests(unittest.TestCase):
    def record(self, action: str, level: int = logging.INFO) -> logging.LogRecord:
        logger = logging.getLogger("sentinel_mirror.test")
        captured: list[logging.LogRecord] = []

        class _Capture(logging.Handler):
            def emit(self, record: logging.LogRecord) -> None:
                captured.append(record)

        handler = _Capture()
        logger.addHandler(handler)
        logger.setLevel(logging.DEBUG)
        try:
            log_action(logger, action, "/srv/target/a.txt", path=Path("/srv/target/a.txt"), is_dir=False, level=level)
        finally:
            logger.removeHandler(handler)
        return captured[0]

    def test_plain_formatter_has_no_escape_codes(self) -> None:
        formatter = ColorizingFormatter(use_color=False, fmt="%(message)s")
        self.assertEqual(formatter.format(self.record("COPY")), "COPY | /srv/target/a.txt")

    def test_color_formatter_marks_action_and_path(self) -> None:
        formatter = ColorizingFormatter(use_color=True, fmt="%(message)s")
        text = formatter.format(self.record("COPY"))
        self.assertIn(f"{sentinel_mirror.Ansi.GREEN}COPY{sentinel_mirror.Ansi.RESET}", text)
        self.assertIn(f"{sentinel_mirror.Ansi.WHITE}/srv/target/a.txt", text)

    def test_errors_are_red(self) -> None:
        formatter = ColorizingFormatter(use_color=True, fmt="%(message)s")
        text = formatter.format(self.record("ERROR", level=logging.ERROR))
        self.assertTrue(text.startswith(sentinel_mirror.Ansi.RED))


class _FakeWatch:
    instances: list["_FakeWatch"] = []

    def __init__(self, source_root: Path, check_interval_sec: float) -> None:
        self.source_root = source_root
        self.started = False
        self.stopped = False
        _FakeWatch.instances.append(self)

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped = True

    def next_batch(self) -> list[WatchEvent]:
        return [WatchEvent(EventKind.SELF_DELETED)]


class MainTests(unittest.TestCase):
    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.base = Path(tmp.name).resolve()
        self.source = self.base / "source"
        self.target = self.base / "target"
        self.source.mkdir()
        self.target.mkdir()
        _FakeWatch.instances.clear()

        quiet = logging.getLogger("sentinel_mirror.main-test")
        patches = [
            mock.patch.object(sentinel_mirror, "setup_logger", return_value=quiet),
            mock.patch.object(sentinel_mirror, "start_termination_listener"),
            mock.patch.object(sentinel_mirror, "SourceWatch", _FakeWatch),
            mock.patch.dict(os.environ, {}, clear=True),
        ]
        for patcher in patches:
            patcher.start()
            self.addCleanup(patcher.stop)

    def test_invalid_config_exits_with_status_2(self) -> None:
        code = sentinel_mirror.main([str(self.base / "missing" / "READY"), str(self.target)])
        self.assertEqual(code, 2)
        self.assertEqual(_FakeWatch.instances, [])

    def test_initial_populate_then_fatal_directory_removal(self) -> None:
        (self.source / "READY").write_bytes(b"v1")
        (self.source / "a.txt").write_bytes(b"hello")

        code = sentinel_mirror.main([str(self.source / "READY"), str(self.target)])

        self.assertEqual(code, 1)
        self.assertEqual((self.target / "READY").read_bytes(), b"v1")
        self.assertEqual((self.target / "a.txt").read_bytes(), b"hello")
        (watch,) = _FakeWatch.instances
        self.assertTrue(watch.started)
        self.assertTrue(watch.stopped)


if __name__ == "__main__":
    unittest.main()
