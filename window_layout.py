"""
window_layout.py  –  Capture & restore window layouts across displays
=====================================================================

Schema version 1 (see CURRENT_VERSION).

Key behaviours
  · Stable titles: volatile title suffixes (terminal dimensions, unread
    counts, "— Edited" markers) are stripped so a window still matches
    after its title drifted.  The stable title is persisted with the
    snapshot and never recomputed on load.
  · Capture groups windows by the display containing their centre point.
    window_index counts per application, across every display.
  · Apps running but zero windows captured => CaptureFailure (almost
    always a missing permission).  No apps at all => empty layout.
  · Restore matching cascade, first hit wins:
        exact title → stable title → partial stable title →
        window_index → first window
  · Missing apps are launched without activation (bounded wait).  Apps
    with no windows are activated, then asked for a new window.
  · One restore in flight at a time; it runs on a background worker and
    reports (restored, total) through a Future.
"""

import logging
import re
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Protocol, Set, Tuple

log = logging.getLogger(__name__)

# ══════════════════════════════════════════════════════════════════════════
#  Constants
# ══════════════════════════════════════════════════════════════════════════
CURRENT_VERSION = 1

# Ordered by priority: the first separator found in a title wins.
TITLE_SEPARATORS = (" — ", " - ", " | ", " – ", " : ")

# A first segment shorter than this is usually an app name ("Mail"), so the
# second segment is kept too.
SHORT_PREFIX_LEN = 20

# Trailing terminal size ("bash — 194×53"), with the separator before it.
_DIMENSION_SUFFIX = re.compile(r"(?:\s+[—–|:-])?\s+\d+×\d+$")

MATCH_EXACT   = "exact"
MATCH_STABLE  = "stable"
MATCH_PARTIAL = "partial"
MATCH_INDEX   = "index"
MATCH_FIRST   = "first"

DEFAULT_SETTLE_DELAY       = 0.5
DEFAULT_FRAME_SETTLE_DELAY = 0.1
DEFAULT_LAUNCH_TIMEOUT     = 10.0


# ══════════════════════════════════════════════════════════════════════════
#  Errors
# ══════════════════════════════════════════════════════════════════════════
class RecallError(Exception):
    """Base class for every layout capture / restore error."""


class CaptureFailure(RecallError):
    """Apps are running but no window could be read (permission problem)."""


class LayoutFormatError(RecallError, ValueError):
    """A stored layout document is malformed or from a newer version."""


class RestoreInProgress(RecallError):
    """A restore was requested while another one is still running."""


class RestoreWindowError(RecallError):
    """One saved window could not be restored.  Never escapes a restore run."""


class LaunchFailure(RestoreWindowError):
    pass


class MatchNotFound(RestoreWindowError):
    pass


class FrameApplyFailure(RestoreWindowError):
    pass


# ══════════════════════════════════════════════════════════════════════════
#  Title normalisation
# ══════════════════════════════════════════════════════════════════════════
def normalize_title(title: str) -> str:
    """
    Return the stable part of a window title.

      "Terminal — bash — 194×53"   -> "Terminal — bash"
      "Mail — Inbox — 3 unread"    -> "Mail — Inbox"
      "report.docx - Word"         -> "report.docx - Word"
      "Safari"                     -> "Safari"

    Only the highest-priority separator present in the title is used.  The
    first segment is kept on its own unless it is shorter than
    SHORT_PREFIX_LEN characters, in which case the second one is kept too.
    The steps repeat until the title stops changing, so a stable title
    normalises to itself.

    Surrounding whitespace is stripped first, so a size suffix followed by
    trailing spaces ("vim 80×24 ") is removed as well.  Persisted stable
    titles were computed this way.
    """
    result = (title or "").strip()
    while True:
        reduced = _reduce_title(result)
        if reduced == result:
            return result
        result = reduced


def _reduce_title(title: str) -> str:
    result = _DIMENSION_SUFFIX.sub("", title)
    for sep in TITLE_SEPARATORS:
        parts = result.split(sep)
        if len(parts) > 1:
            if len(parts[0]) < SHORT_PREFIX_LEN:
                result = sep.join(parts[:2])
            else:
                result = parts[0]
            break
    return result.strip()


# ══════════════════════════════════════════════════════════════════════════
#  Snapshot model
# ══════════════════════════════════════════════════════════════════════════
def _require(data: Dict, key: str, kind: type, where: str) -> Any:
    if not isinstance(data, dict):
        raise LayoutFormatError(f"{where}: expected an object, got {type(data).__name__}")
    if key not in data:
        raise LayoutFormatError(f"{where}: missing {key!r}")
    value = data[key]
    # bool is an int subclass; "window_index": true is not an index.
    if isinstance(value, bool) and kind is not bool:
        raise LayoutFormatError(f"{where}: {key!r} has the wrong type")
    if kind is float and isinstance(value, int):
        return float(value)
    if not isinstance(value, kind):
        raise LayoutFormatError(f"{where}: {key!r} has the wrong type")
    return value


def _format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    text = value.replace(tzinfo=None).isoformat()
    return text + "Z"


def _parse_timestamp(text: str) -> datetime:
    raw = text.strip()
    if raw.endswith(("Z", "z")):
        raw = raw[:-1] + "+00:00"
    try:
        value = datetime.fromisoformat(raw)
    except ValueError:
        raise LayoutFormatError(f"created_at is not an ISO-8601 timestamp: {text!r}")
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class WindowFrame:
    x: float
    y: float
    width: float
    height: float

    @property
    def center(self) -> Tuple[float, float]:
        return self.x + self.width / 2, self.y + self.height / 2

    def to_dict(self) -> Dict:
        return {"x": self.x, "y": self.y,
                "width": self.width, "height": self.height}

    @classmethod
    def from_dict(cls, data: Dict) -> "WindowFrame":
        return cls(
            x=_require(data, "x", float, "frame"),
            y=_require(data, "y", float, "frame"),
            width=_require(data, "width", float, "frame"),
            height=_require(data, "height", float, "frame"),
        )


@dataclass(frozen=True)
class WindowSnapshot:
    """
    One window at capture time.

    stable_title is derived from window_title when omitted.  It is only
    passed explicitly when reading a stored layout, so that files written by
    an older normaliser keep the key they were saved with.
    """
    bundle_id: str
    window_title: str
    window_index: int
    frame: WindowFrame
    stable_title: Optional[str] = field(default=None)

    def __post_init__(self) -> None:
        if self.stable_title is None:
            object.__setattr__(self, "stable_title", normalize_title(self.window_title))

    def to_dict(self) -> Dict:
        return {
            "bundle_id":    self.bundle_id,
            "window_title": self.window_title,
            "stable_title": self.stable_title,
            "window_index": self.window_index,
            "frame":        self.frame.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "WindowSnapshot":
        where = "window"
        stable = data.get("stable_title") if isinstance(data, dict) else None
        if stable is not None and not isinstance(stable, str):
            raise LayoutFormatError(f"{where}: 'stable_title' has the wrong type")
        index = _require(data, "window_index", int, where)
        if index < 0:
            raise LayoutFormatError(f"{where}: 'window_index' must be >= 0")
        return cls(
            bundle_id=_require(data, "bundle_id", str, where),
            window_title=_require(data, "window_title", str, where),
            window_index=index,
            frame=WindowFrame.from_dict(_require(data, "frame", dict, where)),
            stable_title=stable,
        )


@dataclass(frozen=True)
class DisplaySnapshot:
    display_uuid: str
    windows: Tuple[WindowSnapshot, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "windows", tuple(self.windows))

    def to_dict(self) -> Dict:
        return {"display_uuid": self.display_uuid,
                "windows": [w.to_dict() for w in self.windows]}

    @classmethod
    def from_dict(cls, data: Dict) -> "DisplaySnapshot":
        windows = _require(data, "windows", list, "display")
        return cls(
            display_uuid=_require(data, "display_uuid", str, "display"),
            windows=tuple(WindowSnapshot.from_dict(w) for w in windows),
        )


@dataclass(frozen=True)
class Layout:
    name: str
    displays: Tuple[DisplaySnapshot, ...] = ()
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    version: int = CURRENT_VERSION

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise ValueError("layout name must not be empty")
        created = self.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        # Stored timestamps carry whole seconds only.
        created = created.astimezone(timezone.utc).replace(microsecond=0)
        object.__setattr__(self, "created_at", created)
        object.__setattr__(self, "displays", tuple(self.displays))

    @property
    def window_count(self) -> int:
        return sum(len(d.windows) for d in self.displays)

    def to_dict(self) -> Dict:
        return {
            "version":    self.version,
            "name":       self.name,
            "created_at": _format_timestamp(self.created_at),
            "displays":   [d.to_dict() for d in self.displays],
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Layout":
        data = _migrate(data)
        name = _require(data, "name", str, "layout")
        if not name.strip():
            raise LayoutFormatError("layout: 'name' must not be empty")
        return cls(
            version=data["version"],
            name=name,
            created_at=_parse_timestamp(_require(data, "created_at", str, "layout")),
            displays=tuple(DisplaySnapshot.from_dict(d)
                           for d in _require(data, "displays", list, "layout")),
        )


def _migrate(data: Dict) -> Dict:
    """Bring an older layout document up to CURRENT_VERSION."""
    if not isinstance(data, dict):
        raise LayoutFormatError("layout: expected a JSON object")
    data = dict(data)
    data.setdefault("version", 1)
    version = data["version"]
    if isinstance(version, bool) or not isinstance(version, int):
        raise LayoutFormatError(f"layout: unsupported version {version!r}")
    if version > CURRENT_VERSION:
        raise LayoutFormatError(
            f"layout {data.get('name')!r} was written by a newer version "
            f"(v{version}, this build reads up to v{CURRENT_VERSION})"
        )
    return data


# ══════════════════════════════════════════════════════════════════════════
#  Collaborators (implemented by the OS backend)
# ══════════════════════════════════════════════════════════════════════════
@dataclass(frozen=True)
class RunningApp:
    app_id: str
    pid: int
    name: str = ""


@dataclass(frozen=True)
class LiveWindow:
    """A live window seen during one capture / restore.  Never persisted."""
    handle: Any
    title: str
    frame: WindowFrame


class WindowSource(Protocol):
    def windows_for(self, pid: int) -> List[LiveWindow]: ...


class DisplaySource(Protocol):
    def display_at(self, x: float, y: float) -> Optional[str]: ...


class WindowControl(Protocol):
    def windows_for(self, pid: int) -> List[LiveWindow]: ...
    def running_pid(self, app_id: str) -> Optional[int]: ...
    def launch(self, app_id: str, timeout: float) -> bool: ...
    def activate(self, pid: int) -> None: ...
    def open_new_window(self, app_id: str) -> None: ...
    def set_position(self, handle: Any, x: float, y: float) -> bool: ...
    def set_size(self, handle: Any, width: float, height: float) -> bool: ...
    def read_frame(self, handle: Any) -> Optional[WindowFrame]: ...


# ══════════════════════════════════════════════════════════════════════════
#  Capture
# ══════════════════════════════════════════════════════════════════════════
def capture_layout(
    name: str,
    running_apps: List[RunningApp],
    window_source: WindowSource,
    display_source: DisplaySource,
    logger: Optional[logging.Logger] = None,
) -> Layout:
    """
    Snapshot every window of every app in running_apps.

    Windows whose centre is on no known display are skipped without using
    up a window_index.  Raises CaptureFailure when apps were given but no
    window at all was captured.
    """
    logger = logger or log
    buckets: Dict[str, List[WindowSnapshot]] = {}
    next_index: Dict[str, int] = {}

    for app in running_apps:
        windows = window_source.windows_for(app.pid)
        logger.debug("capture: %s (pid %d) reports %d windows",
                     app.app_id, app.pid, len(windows))
        for win in windows:
            cx, cy = win.frame.center
            uuid = display_source.display_at(cx, cy)
            if uuid is None:
                logger.debug("capture: skip %r, centre (%.0f, %.0f) on no display",
                             win.title, cx, cy)
                continue
            index = next_index.get(app.app_id, 0)
            next_index[app.app_id] = index + 1
            buckets.setdefault(uuid, []).append(WindowSnapshot(
                bundle_id=app.app_id,
                window_title=win.title,
                window_index=index,
                frame=win.frame,
            ))
            logger.debug("capture: [%s #%d] %r on %s", app.app_id, index, win.title, uuid)

    displays = tuple(DisplaySnapshot(uuid, tuple(wins)) for uuid, wins in buckets.items())
    total = sum(len(d.windows) for d in displays)
    if running_apps and total == 0:
        logger.warning("capture: no windows captured despite %d running apps "
                       "- likely a permission issue", len(running_apps))
        raise CaptureFailure(
            f"no windows captured from {len(running_apps)} running applications"
        )

    logger.info("capture: %r -> %d windows on %d displays", name, total, len(displays))
    return Layout(name=name, displays=displays)


# ══════════════════════════════════════════════════════════════════════════
#  Matching
# ══════════════════════════════════════════════════════════════════════════
def find_best_match(
    snapshot: WindowSnapshot,
    windows: List[LiveWindow],
    logger: Optional[logging.Logger] = None,
) -> Optional[Tuple[LiveWindow, str]]:
    """
    Pick the live window that best corresponds to a saved snapshot.

    Returns (window, strategy) or None when `windows` is empty.  Strategies
    are tried in order and the first hit wins:

      exact    raw title equal
      stable   normalised titles equal
      partial  one normalised title contains the other (skipped when the
               saved stable title is empty)
      index    window at the saved window_index
      first    first window in the list
    """
    logger = logger or log
    if not windows:
        return None

    for win in windows:
        if win.title == snapshot.window_title:
            return _matched(logger, win, MATCH_EXACT)

    saved = snapshot.stable_title
    current = [(win, normalize_title(win.title)) for win in windows]
    for win, stable in current:
        if stable == saved:
            return _matched(logger, win, MATCH_STABLE)

    if saved:
        for win, stable in current:
            if stable and (saved in stable or stable in saved):
                return _matched(logger, win, MATCH_PARTIAL)

    if 0 <= snapshot.window_index < len(windows):
        return _matched(logger, windows[snapshot.window_index], MATCH_INDEX)

    return _matched(logger, windows[0], MATCH_FIRST)


def _matched(logger: logging.Logger, win: LiveWindow, strategy: str) -> Tuple[LiveWindow, str]:
    logger.debug("match: strategy=%s -> %r", strategy, win.title)
    return win, strategy


# ══════════════════════════════════════════════════════════════════════════
#  Restore
# ══════════════════════════════════════════════════════════════════════════
class RestoreResult(NamedTuple):
    restored: int
    total: int

    @property
    def complete(self) -> bool:
        return self.total > 0 and self.restored == self.total


class RestoreEngine:
    """
    Applies a Layout to the live desktop through a WindowControl.

    Every window is restored independently; a failure is logged and counted
    but never stops the run.  The live window list is re-read at every step
    because the OS applies changes asynchronously.
    """

    def __init__(
        self,
        control: WindowControl,
        logger: Optional[logging.Logger] = None,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
        frame_settle_delay: float = DEFAULT_FRAME_SETTLE_DELAY,
        launch_timeout: float = DEFAULT_LAUNCH_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.control            = control
        self.log                = logger or log
        self.settle_delay       = settle_delay
        self.frame_settle_delay = frame_settle_delay
        self.launch_timeout     = launch_timeout
        self._sleep             = sleep
        self._busy              = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None

    # ── public API ─────────────────────────────────────────────────────────
    def restore_layout(self, layout: Layout) -> RestoreResult:
        """
        Restore synchronously.  Prefer restore_layout_async from UI code.

        Raises RestoreInProgress if a restore is already running.
        """
        if not self._busy.acquire(blocking=False):
            raise RestoreInProgress(f"cannot restore {layout.name!r}: another restore is running")
        return self._run_locked(layout)

    def restore_layout_async(
        self,
        layout: Layout,
        on_done: Optional[Callable[[int, int], None]] = None,
    ) -> "Future[RestoreResult]":
        """
        Run restore_layout on the background worker.

        Raises RestoreInProgress if a restore is already running.  on_done
        receives (restored, total) once the run finishes.
        """
        if not self._busy.acquire(blocking=False):
            raise RestoreInProgress(f"cannot restore {layout.name!r}: another restore is running")
        try:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="restore")
            future = self._executor.submit(self._run_locked, layout)
        except BaseException:
            self._busy.release()
            raise
        if on_done is not None:
            def _notify(fut: "Future[RestoreResult]") -> None:
                if fut.exception() is None:
                    on_done(*fut.result())
            future.add_done_callback(_notify)
        return future

    @property
    def busy(self) -> bool:
        return self._busy.locked()

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None

    def restore_window(self, snapshot: WindowSnapshot,
                       failed_launches: Optional[Set[str]] = None) -> bool:
        """
        Restore one window.  Returns True when its frame was applied.

        failed_launches holds the app ids that could not be launched earlier
        in the same run; apps in it are not launched again.
        """
        self.log.debug("restore: window %s %r", snapshot.bundle_id, snapshot.window_title)
        if failed_launches is None:
            failed_launches = set()
        try:
            self._restore_window(snapshot, failed_launches)
            return True
        except RestoreWindowError as exc:
            self.log.warning("restore: %s %r failed: %s: %s", snapshot.bundle_id,
                             snapshot.window_title, type(exc).__name__, exc)
        except Exception:
            self.log.exception("restore: %s %r failed unexpectedly",
                               snapshot.bundle_id, snapshot.window_title)
        return False

    # ── steps ──────────────────────────────────────────────────────────────
    def _run_locked(self, layout: Layout) -> RestoreResult:
        try:
            return self._restore_layout(layout)
        finally:
            self._busy.release()

    def _restore_layout(self, layout: Layout) -> RestoreResult:
        self.log.info("restore: %r, %d displays", layout.name, len(layout.displays))
        failed_launches: Set[str] = set()
        total = restored = 0
        for display in layout.displays:
            self.log.debug("restore: display %s, %d windows",
                           display.display_uuid, len(display.windows))
            for snapshot in display.windows:
                total += 1
                if self.restore_window(snapshot, failed_launches):
                    restored += 1
        self.log.info("restore: %r complete, %d/%d", layout.name, restored, total)
        return RestoreResult(restored, total)

    def _restore_window(self, snapshot: WindowSnapshot, failed_launches: Set[str]) -> None:
        pid = self._ensure_running(snapshot.bundle_id, failed_launches)
        windows = self._windows_with_recovery(snapshot.bundle_id, pid)
        for win in windows:
            self.log.debug("restore:   live window %r", win.title)

        match = find_best_match(snapshot, windows, self.log)
        if match is None:
            raise MatchNotFound(f"{snapshot.bundle_id} has no windows")
        window, _strategy = match
        self._apply_frame(window, snapshot.frame)

    def _ensure_running(self, app_id: str, failed_launches: Set[str]) -> int:
        if app_id in failed_launches:
            raise LaunchFailure(f"{app_id} already failed to launch in this restore")

        pid = self.control.running_pid(app_id)
        if pid is not None:
            self.log.debug("restore: %s already running (pid %d)", app_id, pid)
            return pid

        self.log.info("restore: %s not running, launching", app_id)
        if not self.control.launch(app_id, self.launch_timeout):
            failed_launches.add(app_id)
            raise LaunchFailure(f"could not launch {app_id}")
        self._sleep(self.settle_delay)

        pid = self.control.running_pid(app_id)
        if pid is None:
            failed_launches.add(app_id)
            raise LaunchFailure(f"{app_id} launched but no running instance found")
        return pid

    def _windows_with_recovery(self, app_id: str, pid: int) -> List[LiveWindow]:
        windows = self.control.windows_for(pid)
        self.log.debug("restore: %s has %d windows", app_id, len(windows))
        if windows:
            return windows

        self.log.info("restore: %s has no windows, activating", app_id)
        try:
            self.control.activate(pid)
        except Exception:
            self.log.warning("restore: activating %s failed", app_id, exc_info=True)
        self._sleep(self.settle_delay)
        windows = self.control.windows_for(pid)
        self.log.debug("restore: after activation %d windows", len(windows))
        if windows:
            return windows

        self.log.info("restore: %s still has no windows, requesting a new one", app_id)
        try:
            self.control.open_new_window(app_id)
        except Exception:
            self.log.warning("restore: new window request for %s failed", app_id, exc_info=True)
        self._sleep(self.settle_delay)
        windows = self.control.windows_for(pid)
        self.log.debug("restore: after new window request %d windows", len(windows))
        return windows

    def _apply_frame(self, window: LiveWindow, frame: WindowFrame) -> None:
        before = self.control.read_frame(window.handle)
        self.log.debug("restore: target (%s, %s, %s, %s) from %s",
                       frame.x, frame.y, frame.width, frame.height, before)

        moved = self.control.set_position(window.handle, frame.x, frame.y)
        sized = self.control.set_size(window.handle, frame.width, frame.height)
        self.log.debug("restore: position ok=%s size ok=%s", moved, sized)

        self._sleep(self.frame_settle_delay)
        after = self.control.read_frame(window.handle)
        if before is not None and after is not None:
            self.log.debug("restore: window actually moved: %s",
                           (before.x, before.y) != (after.x, after.y))

        if not (moved and sized):
            raise FrameApplyFailure(
                f"{window.title!r}: position ok={moved}, size ok={sized}"
            )
