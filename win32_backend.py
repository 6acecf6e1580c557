"""
win32_backend.py  –  Windows implementation of the layout collaborators
=======================================================================

Application identity is the executable path reported by psutil.  Only
top-level, visible, titled, unowned, non-tool windows count; minimised
windows are left out of capture and matching.

Display identity is the monitor device name (\\\\.\\DISPLAY1, ...).
"""

import logging
import os
import subprocess
import time
from typing import Dict, List, Optional, Set, Tuple

import psutil
import pywintypes
import win32api
import win32con
import win32gui
import win32process

from window_layout import LiveWindow, RunningApp, WindowFrame

log = logging.getLogger(__name__)

# Processes that own visible top-level windows but are part of the shell.
_BLOCKED_PROC: Set[str] = {
    "textinputhost.exe",
    "applicationframehost.exe",
    "shellhost.exe",
    "startmenuexperiencehost.exe",
    "searchhost.exe",
    "searchapp.exe",
    "lockapp.exe",
    "systemsettings.exe",
    "dwm.exe",
    "fontdrvhost.exe",
    "rtkuwp.exe",
}

_BLOCKED_CLASS: Set[str] = {
    "windows.ui.core.corewindow",
    "applicationframewindow",
    "progman",
    "workerw",
}

_LAUNCH_POLL = 0.1


# ══════════════════════════════════════════════════════════════════════════
#  Tiny helpers
# ══════════════════════════════════════════════════════════════════════════
def _safe_text(hwnd: int) -> str:
    try:    return win32gui.GetWindowText(hwnd) or ""
    except pywintypes.error: return ""

def _safe_class(hwnd: int) -> str:
    try:    return win32gui.GetClassName(hwnd) or ""
    except pywintypes.error: return ""

def _get_pid(hwnd: int) -> int:
    try:
        _, pid = win32process.GetWindowThreadProcessId(hwnd)
        return int(pid or 0)
    except pywintypes.error: return 0

def _proc_info(pid: int) -> Tuple[str, str]:
    """Returns (process_name, exe_path)."""
    if not pid: return "", ""
    try:
        p = psutil.Process(pid)
        return (p.name() or ""), (p.exe() or "")
    except (psutil.Error, OSError): return "", ""

def _window_frame(hwnd: int) -> Optional[WindowFrame]:
    try:
        left, top, right, bottom = win32gui.GetWindowRect(hwnd)
    except pywintypes.error:
        return None
    return WindowFrame(float(left), float(top), float(right - left), float(bottom - top))

def _same_exe(a: str, b: str) -> bool:
    return os.path.normcase(os.path.normpath(a)) == os.path.normcase(os.path.normpath(b))

def _no_activate_startupinfo():
    if not hasattr(subprocess, "STARTUPINFO"):
        return None
    startup = subprocess.STARTUPINFO()
    startup.dwFlags |= subprocess.STARTF_USESHOWWINDOW
    startup.wShowWindow = win32con.SW_SHOWNOACTIVATE
    return startup


# ══════════════════════════════════════════════════════════════════════════
#  Window filter
# ══════════════════════════════════════════════════════════════════════════
def _is_app_window(hwnd: int, include_minimized: bool = False) -> bool:
    """True for a top-level window a user would call "an app window"."""
    if not win32gui.IsWindow(hwnd):         return False
    if win32gui.GetParent(hwnd):            return False
    if not win32gui.IsWindowVisible(hwnd):  return False
    if not include_minimized and win32gui.IsIconic(hwnd):
        return False

    if not _safe_text(hwnd).strip():        return False
    if _safe_class(hwnd).strip().lower() in _BLOCKED_CLASS:
        return False

    try:
        ex_style = win32gui.GetWindowLong(hwnd, win32con.GWL_EXSTYLE)
        owner    = win32gui.GetWindow(hwnd, win32con.GW_OWNER)
    except pywintypes.error:
        ex_style, owner = 0, 0

    # Tool windows are floating palettes; owned windows are dialogs.
    if (ex_style & win32con.WS_EX_TOOLWINDOW) and not (ex_style & win32con.WS_EX_APPWINDOW):
        return False
    if owner and not (ex_style & win32con.WS_EX_APPWINDOW):
        return False
    return True


def _top_level_windows() -> List[int]:
    hwnds: List[int] = []
    win32gui.EnumWindows(lambda hwnd, _: hwnds.append(hwnd), None)
    return hwnds


# ══════════════════════════════════════════════════════════════════════════
#  Backend
# ══════════════════════════════════════════════════════════════════════════
class Win32Backend:
    """WindowSource, DisplaySource and WindowControl on top of pywin32."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self.log = logger or log

    # ── enumeration ────────────────────────────────────────────────────────
    def running_apps(self) -> List[RunningApp]:
        """One entry per process that owns at least one app window."""
        seen: Dict[int, RunningApp] = {}
        for hwnd in _top_level_windows():
            if not _is_app_window(hwnd, include_minimized=True):
                continue
            pid = _get_pid(hwnd)
            if not pid or pid in seen:
                continue
            proc, exe = _proc_info(pid)
            if not exe or proc.lower() in _BLOCKED_PROC:
                continue
            seen[pid] = RunningApp(app_id=exe, pid=pid, name=proc)
        self.log.debug("win32: %d running apps", len(seen))
        return list(seen.values())

    def windows_for(self, pid: int) -> List[LiveWindow]:
        """App windows of `pid` in z-order, front-most first."""
        result: List[LiveWindow] = []
        for hwnd in _top_level_windows():
            if _get_pid(hwnd) != pid or not _is_app_window(hwnd):
                continue
            frame = _window_frame(hwnd)
            if frame is None:
                continue
            result.append(LiveWindow(handle=hwnd, title=_safe_text(hwnd), frame=frame))
        return result

    def display_at(self, x: float, y: float) -> Optional[str]:
        try:
            monitor = win32api.MonitorFromPoint((int(x), int(y)), win32con.MONITOR_DEFAULTTONULL)
            if not monitor:
                self.log.debug("win32: (%.0f, %.0f) on no monitor, using primary", x, y)
                monitor = win32api.MonitorFromPoint((0, 0), win32con.MONITOR_DEFAULTTOPRIMARY)
            info = win32api.GetMonitorInfo(monitor)
        except pywintypes.error:
            return None
        return str(info.get("Device") or "") or None

    # ── process control ────────────────────────────────────────────────────
    def running_pid(self, app_id: str) -> Optional[int]:
        """A running process for app_id, preferring one that owns windows."""
        candidates: List[int] = []
        for proc in psutil.process_iter(["pid", "exe"]):
            exe = proc.info.get("exe") or ""
            if exe and _same_exe(exe, app_id):
                candidates.append(proc.info["pid"])
        if not candidates:
            return None
        owners = {_get_pid(h) for h in _top_level_windows() if _is_app_window(h, True)}
        for pid in candidates:
            if pid in owners:
                return pid
        return candidates[0]

    def launch(self, app_id: str, timeout: float) -> bool:
        """Start app_id without stealing focus; wait until it is running."""
        if not os.path.exists(app_id):
            self.log.warning("win32: cannot launch %s: no such file", app_id)
            return False
        try:
            subprocess.Popen([app_id], startupinfo=_no_activate_startupinfo(),
                             cwd=os.path.dirname(app_id) or None)
        except OSError as exc:
            self.log.warning("win32: launch of %s failed: %s", app_id, exc)
            return False

        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if self.running_pid(app_id) is not None:
                return True
            time.sleep(_LAUNCH_POLL)
        self.log.warning("win32: %s did not start within %.1fs", app_id, timeout)
        return False

    def activate(self, pid: int) -> None:
        for hwnd in _top_level_windows():
            if _get_pid(hwnd) == pid and _is_app_window(hwnd, include_minimized=True):
                if win32gui.IsIconic(hwnd):
                    win32gui.ShowWindow(hwnd, win32con.SW_RESTORE)
                win32gui.SetForegroundWindow(hwnd)
                return
        self.log.debug("win32: pid %d has no window to activate", pid)

    def open_new_window(self, app_id: str) -> None:
        # A second start of most desktop apps opens a fresh window in the
        # running instance.
        subprocess.Popen([app_id], cwd=os.path.dirname(app_id) or None)

    # ── geometry ───────────────────────────────────────────────────────────
    def _unsnap(self, hwnd: int) -> None:
        # SetWindowPos on a maximised window moves its restore rect only.
        if win32gui.IsZoomed(hwnd) or win32gui.IsIconic(hwnd):
            win32gui.ShowWindow(hwnd, win32con.SW_SHOWNOACTIVATE)

    def set_position(self, handle: int, x: float, y: float) -> bool:
        flags = win32con.SWP_NOSIZE | win32con.SWP_NOZORDER | win32con.SWP_NOACTIVATE
        try:
            self._unsnap(handle)
            win32gui.SetWindowPos(handle, 0, int(x), int(y), 0, 0, flags)
            return True
        except pywintypes.error as exc:
            self.log.debug("win32: SetWindowPos(move) hwnd=%s failed: %s", hex(handle), exc)
            return False

    def set_size(self, handle: int, width: float, height: float) -> bool:
        flags = win32con.SWP_NOMOVE | win32con.SWP_NOZORDER | win32con.SWP_NOACTIVATE
        try:
            win32gui.SetWindowPos(handle, 0, 0, 0, int(width), int(height), flags)
            return True
        except pywintypes.error as exc:
            self.log.debug("win32: SetWindowPos(size) hwnd=%s failed: %s", hex(handle), exc)
            return False

    def read_frame(self, handle: int) -> Optional[WindowFrame]:
        return _window_frame(handle)
