# /sentinel_mirror.py
"""
Sentinel Mirror (no UI)
- Keeps a target folder mirroring a source folder, gated by a sentinel file.
- The producer writes the source tree first and the sentinel last; the sentinel's
  bytes identify the version of the tree.
- On startup and whenever the sentinel is written: if the target's sentinel differs
  from the source's, the target is cleared and refilled, sentinel copied last.
- When the sentinel is deleted from the source, the target is emptied.
- If the source folder itself is deleted or moved away, the process exits non-zero.
- Per-entry copy/delete failures are logged and the walk continues.
- Styled console output:
  - COPY / SENTINEL green
  - DELETE / RMTREE orange
  - errors red
  - file paths white
  - folder paths light brown
- Log file (optional, --log-dir) is always plain (no color codes).

Usage
  pip install watchdog colorama
  python sentinel_mirror.py /opt/producer/content/READY /srv/consumer/content
  COMPONENT_SENTINEL_PATH=/opt/producer/content/READY COMPONENT_TARGET=/srv/consumer/content \
      python sentinel_mirror.py --debug
"""

from __future__ import annotations

import argparse
import datetime as dt
import enum
import logging
import os
import queue
import shutil
import signal
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from colorama import just_fix_windows_console
from watchdog.events import DirDeletedEvent, FileClosedEvent, FileDeletedEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver

ENV_SENTINEL_PATH = "COMPONENT_SENTINEL_PATH"
ENV_TARGET = "COMPONENT_TARGET"
ENV_DEBUG = "DEBUG"
ENV_LOG_DIR = "COMPONENT_LOG_DIR"

DEFAULT_CHECK_INTERVAL_SEC = 1.0
MIN_CHECK_INTERVAL_SEC = 0.1

LOGGER_NAME = "sentinel_mirror"

# Subsystem loggers: filesystem operations vs. event monitoring.
files_log = logging.getLogger(f"{LOGGER_NAME}.files")
watch_log = logging.getLogger(f"{LOGGER_NAME}.watch")


class TreeError(OSError):
    """A tree root (source or target) could not be listed at all."""


class WatchError(RuntimeError):
    """The filesystem notification source stopped delivering events."""


class MonitorError(RuntimeError):
    """Fatal dispatcher condition; the process must exit non-zero."""


# -------------------------
# Console styling
# -------------------------

class Ansi:
    RESET = "\x1b[0m"
    RED = "\x1b[31m"
    GREEN = "\x1b[32m"
    ORANGE = "\x1b[38;5;208m"
    WHITE = "\x1b[97m"
    LIGHT_BROWN = "\x1b[33m"


ACTION_COLORS = {
    "COPY": Ansi.GREEN,
    "SENTINEL": Ansi.GREEN,
    "MKDIR": Ansi.LIGHT_BROWN,
    "SYMLINK": Ansi.LIGHT_BROWN,
    "DELETE": Ansi.ORANGE,
    "RMTREE": Ansi.ORANGE,
    "SKIP": Ansi.ORANGE,
    "ERROR": Ansi.RED,
}


def _paint(text: str, color: str) -> str:
    return f"{color}{text}{Ansi.RESET}" if color else text


class ColorizingFormatter(logging.Formatter):
    """Console formatter: whole line red at ERROR, else colored action and path."""

    def __init__(self, use_color: bool, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        if not self.use_color:
            return line
        if record.levelno >= logging.ERROR:
            return _paint(line, Ansi.RED)

        action = getattr(record, "action", "")
        if action:
            line = line.replace(action, _paint(action, ACTION_COLORS.get(action, "")), 1)

        path_text = getattr(record, "path_text", "")
        if path_text:
            path_color = Ansi.LIGHT_BROWN if getattr(record, "is_dir", False) else Ansi.WHITE
            line = line.replace(path_text, _paint(path_text, path_color))
        return line


def _today_log_name(prefix: str = LOGGER_NAME) -> str:
    return f"{prefix}_{dt.date.today().isoformat()}.log"


def setup_logger(log_dir: Optional[Path] = None, debug: bool = False) -> logging.Logger:
    """Configure the ``sentinel_mirror`` logger tree once per process.

    Both subsystem loggers (``.files`` and ``.watch``) inherit the handlers
    installed here. Calling it again only adjusts the level.
    """
    level = logging.DEBUG if debug else logging.INFO

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False

    if logger.handlers:
        for handler in logger.handlers:
            handler.setLevel(level)
        return logger

    just_fix_windows_console()

    fmt = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(level)
    ch.setFormatter(ColorizingFormatter(use_color=sys.stdout.isatty(), fmt=fmt, datefmt=datefmt))
    logger.addHandler(ch)

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        log_path = log_dir / _today_log_name()
        fh = logging.FileHandler(log_path, encoding="utf-8")
        fh.setFormatter(logging.Formatter(fmt=fmt, datefmt=datefmt))
        fh.setLevel(level)
        logger.addHandler(fh)
        logger.info("Logging to: %s", log_path)

    return logger


def log_action(
    logger: logging.Logger,
    action: str,
    message: str,
    path: Optional[Path] = None,
    is_dir: Optional[bool] = None,
    level: int = logging.INFO,
) -> None:
    extra = {"action": action}
    if path is not None:
        extra["path_text"] = str(path)
        extra["is_dir"] = bool(is_dir) if is_dir is not None else path.is_dir()
    logger.log(level, f"{action} | {message}", extra=extra)


# -------------------------
# Config / CLI
# -------------------------

@dataclass(frozen=True)
class AppConfig:
    source_dir: Path
    sentinel_name: str
    target_dir: Path
    debug: bool
    log_dir: Optional[Path]
    check_interval_sec: float


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in {"1", "true", "yes", "on"}


def parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Mirror a source folder into a target folder, gated by a sentinel file.",
    )
    p.add_argument(
        "sentinel_path",
        nargs="?",
        default=os.environ.get(ENV_SENTINEL_PATH),
        help=f"Sentinel file to monitor; its parent is the source folder. [env: {ENV_SENTINEL_PATH}]",
    )
    p.add_argument(
        "target",
        nargs="?",
        default=os.environ.get(ENV_TARGET),
        help=f"Folder to manage content in. [env: {ENV_TARGET}]",
    )
    p.add_argument(
        "-d",
        "--debug",
        action="store_true",
        default=_env_flag(ENV_DEBUG),
        help=f"Turn on debug logging. [env: {ENV_DEBUG}]",
    )
    p.add_argument(
        "--log-dir",
        type=str,
        default=os.environ.get(ENV_LOG_DIR),
        help=f"Also write a plain log file into this directory. [env: {ENV_LOG_DIR}]",
    )
    p.add_argument(
        "--check-interval",
        type=float,
        default=DEFAULT_CHECK_INTERVAL_SEC,
        help="Seconds between checks that the source folder is still in place.",
    )
    args = p.parse_args(argv)
    if not args.sentinel_path:
        p.error(f"a sentinel path is required (argument or ${ENV_SENTINEL_PATH})")
    if not args.target:
        p.error(f"a target folder is required (argument or ${ENV_TARGET})")
    return args


def build_effective_config(args: argparse.Namespace) -> AppConfig:
    sentinel_path = Path(args.sentinel_path).expanduser()
    return AppConfig(
        source_dir=sentinel_path.parent,
        sentinel_name=sentinel_path.name,
        target_dir=Path(args.target).expanduser(),
        debug=bool(args.debug),
        log_dir=Path(args.log_dir).expanduser() if args.log_dir else None,
        check_interval_sec=max(MIN_CHECK_INTERVAL_SEC, float(args.check_interval)),
    )


def _is_subpath(child: Path, parent: Path) -> bool:
    try:
        child.relative_to(parent)
        return True
    except ValueError:
        return False


def validate_paths(source: Path, sentinel_name: str, target: Path) -> tuple[Path, Path]:
    if not sentinel_name or sentinel_name in {".", ".."}:
        raise ValueError(f"Sentinel name could not be determined: {sentinel_name!r}")
    if os.sep in sentinel_name or (os.altsep and os.altsep in sentinel_name):
        raise ValueError(f"Sentinel name must not contain path separators: {sentinel_name!r}")

    source = source.expanduser().resolve()
    target = target.expanduser().resolve()

    if not source.is_dir():
        raise ValueError(f"Sentinel's parent is not a directory: {source}")
    if not target.is_dir():
        raise ValueError(f"Target is not a directory: {target}")
    if source == target:
        raise ValueError("Source and target folders must be different.")
    if _is_subpath(target, source):
        raise ValueError("Target folder must NOT be inside the source folder (would cause loops).")
    if _is_subpath(source, target):
        raise ValueError("Source folder must NOT be inside the target folder (cleanup would delete it).")

    return source, target


# -------------------------
# Walk reports
# -------------------------

@dataclass
class WalkReport:
    """Outcome of a best-effort tree walk.

    ``handled`` counts entries processed successfully; ``issues`` holds one
    ``(path, error)`` pair per entry that failed and was skipped.
    """

    handled: int = 0
    issues: list[tuple[Path, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.issues

    def record_issue(self, path: Path, error: object) -> None:
        self.issues.append((path, str(error)))


def _sorted_entries(directory: Path) -> list[os.DirEntry]:
    with os.scandir(directory) as it:
        return sorted(it, key=lambda entry: entry.name)


# -------------------------
# Tree copier
# -------------------------

def _copy_entry(entry: os.DirEntry, dst: Path, report: WalkReport) -> None:
    src = Path(entry.path)
    try:
        if entry.is_symlink():
            link_text = os.readlink(src)
            os.symlink(link_text, dst)
            log_action(files_log, "SYMLINK", f"{dst} -> {link_text}", path=dst, is_dir=False, level=logging.DEBUG)
            report.handled += 1
            return

        if entry.is_dir(follow_symlinks=False):
            os.mkdir(dst)
            log_action(files_log, "MKDIR", f"created {dst}", path=dst, is_dir=True, level=logging.DEBUG)
            report.handled += 1
            children = _sorted_entries(src)
        elif entry.is_file(follow_symlinks=False):
            shutil.copy2(src, dst, follow_symlinks=False)
            log_action(files_log, "COPY", f"{src} -> {dst}", path=dst, is_dir=False, level=logging.DEBUG)
            report.handled += 1
            return
        else:
            log_action(files_log, "SKIP", f"not a file, folder or symlink: {src}", path=src, is_dir=False, level=logging.WARNING)
            report.record_issue(src, "unsupported file type")
            return
    except OSError as e:
        log_action(files_log, "ERROR", f"copy failed {src} -> {dst} | {e}", path=src, is_dir=False, level=logging.ERROR)
        report.record_issue(src, e)
        return

    for child in children:
        _copy_entry(child, dst / child.name, report)


def copy_tree(source: Path, sentinel_name: str, target: Path) -> WalkReport:
    """Copy every entry of ``source`` into ``target`` except the sentinel.

    Symlinks are recreated with the same link text, never followed. A failing
    entry is logged and recorded, and the walk moves on to its siblings.
    Raises ``TreeError`` only when ``source`` itself cannot be listed.
    """
    files_log.info("copying from %s to %s", source, target)
    report = WalkReport()
    try:
        entries = _sorted_entries(source)
    except OSError as e:
        raise TreeError(f"Failed to list source directory {source}: {e}") from e

    for entry in entries:
        if entry.name == sentinel_name:
            continue
        _copy_entry(entry, target / entry.name, report)
    return report


# -------------------------
# Tree cleaner
# -------------------------

def cleanup(target: Path, sentinel_name: str) -> WalkReport:
    """Remove the sentinel from ``target`` first, then every other entry."""
    files_log.info("cleaning up %s", target)
    report = WalkReport()

    sentinel_path = target / sentinel_name
    if os.path.lexists(sentinel_path):
        try:
            os.unlink(sentinel_path)
            log_action(files_log, "DELETE", f"removed sentinel ({sentinel_path})", path=sentinel_path, is_dir=False, level=logging.DEBUG)
            report.handled += 1
        except OSError as e:
            log_action(files_log, "DELETE", f"failed to remove sentinel {sentinel_path} | {e}", path=sentinel_path, is_dir=False, level=logging.WARNING)
            report.record_issue(sentinel_path, e)

    try:
        entries = _sorted_entries(target)
    except OSError as e:
        raise TreeError(f"Failed to list target directory {target}: {e}") from e

    for entry in entries:
        path = Path(entry.path)
        try:
            if entry.is_dir(follow_symlinks=False):
                shutil.rmtree(path)
                log_action(files_log, "RMTREE", f"removed {path} recursively", path=path, is_dir=True, level=logging.DEBUG)
            else:
                os.unlink(path)
                log_action(files_log, "DELETE", f"removed {path}", path=path, is_dir=False, level=logging.DEBUG)
        except OSError as e:
            log_action(files_log, "ERROR", f"failed to remove {path} | {e}", path=path, is_dir=False, level=logging.ERROR)
            report.record_issue(path, e)
            continue
        report.handled += 1

    return report


# -------------------------
# Reconciler
# -------------------------

def read_sentinel(path: Path) -> Optional[bytes]:
    """Return the sentinel's bytes, or None when it is missing or unreadable."""
    try:
        return path.read_bytes()
    except OSError:
        return None


def sentinel_is_current(data: bytes, target_sentinel: Path) -> bool:
    return read_sentinel(target_sentinel) == data


def populate(source: Path, sentinel_name: str, target: Path) -> bool:
    """Refill ``target`` from ``source`` unless the target sentinel is current.

    Returns True when the target was cleared and repopulated. Missing, unreadable
    or blank sentinels never touch the target.
    """
    files_log.info("populating %s from %s with sentinel %r", target, source, sentinel_name)
    sentinel_src = source / sentinel_name

    if not sentinel_src.exists():
        files_log.info("sentinel file (%s) not found, skipping", sentinel_src)
        return False

    try:
        sentinel_data = sentinel_src.read_bytes()
    except OSError as e:
        files_log.error("failed to read sentinel file %s: %s", sentinel_src, e)
        return False
    if not sentinel_data.strip():
        files_log.error("found empty sentinel file (%s), skipping", sentinel_src)
        return False

    sentinel_tgt = target / sentinel_name
    if sentinel_is_current(sentinel_data, sentinel_tgt):
        files_log.info("found current sentinel, skipping")
        return False

    cleaned = cleanup(target, sentinel_name)
    copied = copy_tree(source, sentinel_name, target)

    issue_count = len(cleaned.issues) + len(copied.issues)
    if issue_count:
        files_log.warning("populating %s completed with %d non-fatal issue(s)", target, issue_count)

    # Last, so a fresh sentinel in target always postdates the copied tree.
    try:
        shutil.copy2(sentinel_src, sentinel_tgt)
        log_action(files_log, "SENTINEL", f"copied {sentinel_src} -> {sentinel_tgt}", path=sentinel_tgt, is_dir=False)
    except OSError as e:
        log_action(files_log, "ERROR", f"failed to copy sentinel {sentinel_src} -> {sentinel_tgt} | {e}", path=sentinel_tgt, is_dir=False, level=logging.ERROR)

    return True


# -------------------------
# Source watch
# -------------------------

class EventKind(enum.Enum):
    WRITE_COMPLETED = "write-completed"
    DELETED = "deleted"
    SELF_DELETED = "self-deleted"
    SELF_MOVED = "self-moved"


@dataclass(frozen=True)
class WatchEvent:
    kind: EventKind
    name: Optional[str] = None


# inotify mask: IN_CLOSE_WRITE | IN_DELETE (IN_DELETE_SELF is always added by watchdog).
WATCHED_EVENT_TYPES = [FileClosedEvent, FileDeletedEvent, DirDeletedEvent]


class SourceWatchHandler(FileSystemEventHandler):
    """Translates watchdog callbacks into ``WatchEvent``s on a queue.

    Only direct children of the source folder and the folder itself are
    reported; the observer thread never touches the filesystem.
    """

    def __init__(self, source_root: Path, events: queue.Queue):
        super().__init__()
        self.source_root = str(source_root)
        self.events = events

    def _child_name(self, src_path) -> Optional[str]:
        parent, name = os.path.split(os.fsdecode(src_path))
        if parent != self.source_root or not name:
            return None
        return name

    def on_closed(self, event):
        if event.is_directory:
            return
        name = self._child_name(event.src_path)
        if name is not None:
            self.events.put(WatchEvent(EventKind.WRITE_COMPLETED, name))

    def on_deleted(self, event):
        if os.fsdecode(event.src_path) == self.source_root:
            self.events.put(WatchEvent(EventKind.SELF_DELETED))
            return
        name = self._child_name(event.src_path)
        if name is not None:
            self.events.put(WatchEvent(EventKind.DELETED, name))


def _dir_identity(path: Path) -> Optional[tuple[int, int]]:
    try:
        st = os.stat(path)
    except OSError:
        return None
    return st.st_dev, st.st_ino


class SourceWatch:
    """Non-recursive watch on the source folder, read as ordered event batches.

    watchdog does not surface IN_MOVE_SELF and keeps following a renamed folder,
    so the folder's (device, inode) is compared with the one seen at ``start()``
    on every ``next_batch()`` call, before any batch is handed out, and again
    whenever the queue stays idle for ``check_interval_sec``. A mismatch is
    reported as ``SELF_MOVED`` in place of the batch.
    """

    def __init__(self, source_root: Path, check_interval_sec: float = DEFAULT_CHECK_INTERVAL_SEC):
        self.source_root = source_root
        self.check_interval_sec = max(MIN_CHECK_INTERVAL_SEC, float(check_interval_sec))
        self.events: queue.Queue = queue.Queue()
        self._observer: Optional[BaseObserver] = None
        self._identity: Optional[tuple[int, int]] = None

    def start(self) -> None:
        self._identity = _dir_identity(self.source_root)
        if self._identity is None:
            raise WatchError(f"Cannot watch {self.source_root}: not accessible")

        handler = SourceWatchHandler(self.source_root, self.events)
        observer = Observer()
        observer.schedule(handler, str(self.source_root), recursive=False, event_filter=WATCHED_EVENT_TYPES)
        try:
            observer.start()
        except OSError as e:
            raise WatchError(f"Failed to add watch on {self.source_root}: {e}") from e
        self._observer = observer
        watch_log.debug("watch established on %s (dev=%d, ino=%d)", self.source_root, *self._identity)

    def stop(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=10)
        self._observer = None

    def _moved_away(self) -> Optional[WatchEvent]:
        if _dir_identity(self.source_root) != self._identity:
            watch_log.debug("%s no longer refers to the watched folder", self.source_root)
            return WatchEvent(EventKind.SELF_MOVED)
        return None

    def _check_source(self) -> Optional[WatchEvent]:
        moved = self._moved_away()
        if moved is not None:
            return moved

        observer = self._observer
        if observer is None or not observer.is_alive():
            raise WatchError("filesystem observer is not running")
        if not all(emitter.is_alive() for emitter in observer.emitters):
            raise WatchError("filesystem event emitter stopped")
        return None

    def next_batch(self) -> list[WatchEvent]:
        """Block until events arrive; return them in delivery order."""
        if self._observer is None:
            raise WatchError("watch has not been started")

        moved = self._moved_away()
        if moved is not None:
            return [moved]

        while True:
            try:
                first = self.events.get(timeout=self.check_interval_sec)
            except queue.Empty:
                event = self._check_source()
                if event is not None:
                    return [event]
                continue

            batch = [first]
            while True:
                try:
                    batch.append(self.events.get_nowait())
                except queue.Empty:
                    break

            # Events from a renamed folder still carry the old path.
            if not any(event.kind is EventKind.SELF_DELETED for event in batch):
                moved = self._moved_away()
                if moved is not None:
                    return [moved]
            return batch


# -------------------------
# Event dispatcher
# -------------------------

class DispatcherState(enum.Enum):
    RUNNING = "running"
    TERMINATED = "terminated"


class SentinelDispatcher:
    """Routes source-folder events to populate / cleanup, one at a time."""

    def __init__(
        self,
        source_root: Path,
        sentinel_name: str,
        target_root: Path,
        populate_fn: Callable[[Path, str, Path], object] = populate,
        cleanup_fn: Callable[[Path, str], object] = cleanup,
    ):
        self.source_root = source_root
        self.sentinel_name = sentinel_name
        self.target_root = target_root
        self._populate = populate_fn
        self._cleanup = cleanup_fn
        self.state = DispatcherState.RUNNING

    def _terminate(self, reason: str) -> MonitorError:
        self.state = DispatcherState.TERMINATED
        return MonitorError(reason)

    def dispatch(self, event: WatchEvent) -> None:
        if self.state is DispatcherState.TERMINATED:
            raise MonitorError("dispatcher has already terminated")

        watch_log.debug("handling %s event for %r", event.kind.value, event.name)

        if event.kind in (EventKind.SELF_DELETED, EventKind.SELF_MOVED):
            raise self._terminate(f"Monitored folder disappeared ({event.kind.value}): {self.source_root}")

        if event.name != self.sentinel_name:
            return

        try:
            if event.kind is EventKind.WRITE_COMPLETED:
                self._populate(self.source_root, self.sentinel_name, self.target_root)
            elif event.kind is EventKind.DELETED:
                self._cleanup(self.target_root, self.sentinel_name)
        except TreeError as e:
            raise self._terminate(f"Reconciliation failed: {e}") from e

    def run(self, watch: SourceWatch) -> None:
        """Dispatch batches forever; returns only by raising ``MonitorError``."""
        watch_log.info("starting event monitoring on %s", self.source_root)
        while True:
            try:
                batch = watch.next_batch()
            except WatchError as e:
                raise self._terminate(f"Error reading filesystem events: {e}") from e
            for event in batch:
                self.dispatch(event)


# -------------------------
# Termination listener
# -------------------------

TERMINATION_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def start_termination_listener() -> threading.Thread:
    """Block SIGINT/SIGTERM here and exit the process from a waiting thread.

    Must run before other threads start so they inherit the blocked mask. Any
    copy or cleanup in flight is abandoned.
    """
    signal.pthread_sigmask(signal.SIG_BLOCK, TERMINATION_SIGNALS)

    def _wait_for_signal() -> None:
        signum = signal.sigwait(TERMINATION_SIGNALS)
        logging.getLogger(LOGGER_NAME).info("%s received, shutting down", signal.Signals(signum).name)
        os._exit(0)

    listener = threading.Thread(target=_wait_for_signal, name="termination-listener", daemon=True)
    listener.start()
    return listener


# -------------------------
# Main
# -------------------------

def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv if argv is not None else sys.argv[1:])
    cfg = build_effective_config(args)

    logger = setup_logger(cfg.log_dir, debug=cfg.debug)

    try:
        source, target = validate_paths(cfg.source_dir, cfg.sentinel_name, cfg.target_dir)
        logger.info("Source  : %s", source)
        logger.info("Sentinel: %s", cfg.sentinel_name)
        logger.info("Target  : %s", target)
    except ValueError as e:
        logger.error("Config error: %s", e)
        return 2

    start_termination_listener()

    watch = SourceWatch(source, cfg.check_interval_sec)
    dispatcher = SentinelDispatcher(source, cfg.sentinel_name, target)
    try:
        watch.start()
        try:
            populate(source, cfg.sentinel_name, target)
        except TreeError as e:
            logger.error("Initial populating failed: %s", e)
            return 1
        dispatcher.run(watch)
    except (MonitorError, WatchError) as e:
        logger.error("Sentinel monitoring failed: %s", e)
        return 1
    finally:
        watch.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
