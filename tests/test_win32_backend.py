import importlib
import pathlib
import sys
import types

import pytest


WS_EX_TOOLWINDOW = 0x80
WS_EX_APPWINDOW = 0x40000


class FakeWinError(Exception):
    pass


class FakeGui:
    """Just enough of win32gui, driven by a table of fake windows."""

    def __init__(self):
        self.windows = {}   # hwnd -> dict
        self.calls = []

    def add(self, hwnd, pid, title, cls="Notepad", rect=(0, 0, 800, 600), **extra):
        self.windows[hwnd] = dict(dict(pid=pid, title=title, cls=cls, rect=rect,
                                       visible=True, iconic=False, zoomed=False,
                                       parent=0, owner=0, ex_style=0), **extra)

    def _w(self, hwnd):
        if hwnd not in self.windows:
            raise FakeWinError("invalid window handle")
        return self.windows[hwnd]

    def EnumWindows(self, cb, extra):
        for hwnd in list(self.windows):
            cb(hwnd, extra)

    def IsWindow(self, hwnd):          return hwnd in self.windows
    def GetParent(self, hwnd):         return self._w(hwnd)["parent"]
    def IsWindowVisible(self, hwnd):   return self._w(hwnd)["visible"]
    def IsIconic(self, hwnd):          return self._w(hwnd)["iconic"]
    def IsZoomed(self, hwnd):          return self._w(hwnd)["zoomed"]
    def GetWindowText(self, hwnd):     return self._w(hwnd)["title"]
    def GetClassName(self, hwnd):      return self._w(hwnd)["cls"]
    def GetWindowRect(self, hwnd):     return self._w(hwnd)["rect"]
    def GetWindowLong(self, hwnd, _):  return self._w(hwnd)["ex_style"]
    def GetWindow(self, hwnd, _):      return self._w(hwnd)["owner"]

    def ShowWindow(self, hwnd, cmd):
        self.calls.append(("ShowWindow", hwnd, cmd))

    def SetForegroundWindow(self, hwnd):
        self.calls.append(("SetForegroundWindow", hwnd))

    def SetWindowPos(self, hwnd, after, x, y, cx, cy, flags):
        w = self._w(hwnd)
        self.calls.append(("SetWindowPos", hwnd, x, y, cx, cy, flags))
        left, top, right, bottom = w["rect"]
        if flags & 0x0001:   # SWP_NOSIZE
            w["rect"] = (x, y, x + right - left, y + bottom - top)
        elif flags & 0x0002:  # SWP_NOMOVE
            w["rect"] = (left, top, left + cx, top + cy)


class FakeProcess:
    def __init__(self, pid, name, exe):
        self.pid = pid
        self._name = name
        self._exe = exe
        self.info = {"pid": pid, "exe": exe}

    def name(self): return self._name
    def exe(self):  return self._exe


def _load_module(monkeypatch, gui, processes, monitors=None):
    repo_root = pathlib.Path(__file__).resolve().parents[1]
    if str(repo_root) not in sys.path:
        sys.path.insert(0, str(repo_root))

    monitors = monitors or []   # [(handle, device, (l, t, r, b))]

    def _monitor_from_point(point, flags):
        x, y = point
        for handle, _device, (l, t, r, b) in monitors:
            if l <= x < r and t <= y < b:
                return handle
        if flags == 2 and monitors:   # MONITOR_DEFAULTTOPRIMARY
            return monitors[0][0]
        return None

    def _monitor_info(handle):
        for h, device, rect in monitors:
            if h == handle:
                return {"Device": device, "Monitor": rect}
        raise FakeWinError("bad monitor")

    by_pid = {p.pid: p for p in processes}

    def _process(pid):
        if pid not in by_pid:
            raise fake_psutil.NoSuchProcess(pid)
        return by_pid[pid]

    class _PsError(Exception):
        pass

    class _NoSuchProcess(_PsError):
        pass

    fake_psutil = types.SimpleNamespace(
        Error=_PsError,
        NoSuchProcess=_NoSuchProcess,
        Process=_process,
        process_iter=lambda attrs=None: list(processes),
    )
    fake_win32con = types.SimpleNamespace(
        GWL_EXSTYLE=-20,
        GW_OWNER=4,
        WS_EX_TOOLWINDOW=WS_EX_TOOLWINDOW,
        WS_EX_APPWINDOW=WS_EX_APPWINDOW,
        SW_RESTORE=9,
        SW_SHOWNOACTIVATE=4,
        SWP_NOSIZE=0x0001,
        SWP_NOMOVE=0x0002,
        SWP_NOZORDER=0x0004,
        SWP_NOACTIVATE=0x0010,
        MONITOR_DEFAULTTONULL=0,
        MONITOR_DEFAULTTOPRIMARY=2,
    )

    monkeypatch.setitem(sys.modules, "psutil", fake_psutil)
    monkeypatch.setitem(sys.modules, "pywintypes", types.SimpleNamespace(error=FakeWinError))
    monkeypatch.setitem(sys.modules, "win32con", fake_win32con)
    monkeypatch.setitem(sys.modules, "win32gui", gui)
    monkeypatch.setitem(sys.modules, "win32api", types.SimpleNamespace(
        MonitorFromPoint=_monitor_from_point,
        GetMonitorInfo=_monitor_info,
    ))
    monkeypatch.setitem(sys.modules, "win32process", types.SimpleNamespace(
        GetWindowThreadProcessId=lambda hwnd: (1, gui._w(hwnd)["pid"]),
    ))

    sys.modules.pop("win32_backend", None)
    return importlib.import_module("win32_backend")


NOTEPAD = r"C:\Windows\notepad.exe"
CODE = r"C:\Apps\Code\Code.exe"


@pytest.fixture
def desktop(monkeypatch):
    gui = FakeGui()
    gui.add(100, pid=1, title="notes.txt - Notepad", rect=(0, 0, 800, 600))
    gui.add(101, pid=1, title="Find", owner=100)                          # dialog
    gui.add(102, pid=1, title="", rect=(0, 0, 10, 10))                     # untitled
    gui.add(200, pid=2, title="main.py - Code", rect=(1920, 0, 3840, 1080))
    gui.add(201, pid=2, title="Palette", ex_style=WS_EX_TOOLWINDOW)       # floating
    gui.add(202, pid=2, title="minimised.py - Code", iconic=True)
    gui.add(300, pid=3, title="Program Manager", cls="Progman")
    gui.add(400, pid=4, title="Search", cls="Windows.UI.Core.CoreWindow")
    processes = [
        FakeProcess(1, "notepad.exe", NOTEPAD),
        FakeProcess(2, "Code.exe", CODE),
        FakeProcess(3, "explorer.exe", r"C:\Windows\explorer.exe"),
        FakeProcess(4, "SearchHost.exe", r"C:\Windows\SearchHost.exe"),
        FakeProcess(5, "Code.exe", CODE),   # helper process, no windows
    ]
    monitors = [
        ("hmon1", r"\\.\DISPLAY1", (0, 0, 1920, 1080)),
        ("hmon2", r"\\.\DISPLAY2", (1920, 0, 3840, 1080)),
    ]
    mod = _load_module(monkeypatch, gui, processes, monitors)
    return types.SimpleNamespace(mod=mod, gui=gui, backend=mod.Win32Backend())


def test_running_apps_lists_processes_owning_app_windows(desktop):
    apps = desktop.backend.running_apps()
    assert [(a.app_id, a.pid, a.name) for a in apps] == [
        (NOTEPAD, 1, "notepad.exe"),
        (CODE, 2, "Code.exe"),
    ]


def test_windows_for_filters_dialogs_palettes_and_minimised(desktop):
    notepad = desktop.backend.windows_for(1)
    code = desktop.backend.windows_for(2)

    assert [(w.handle, w.title) for w in notepad] == [(100, "notes.txt - Notepad")]
    assert [w.handle for w in code] == [200]
    assert code[0].frame == desktop.mod.WindowFrame(1920.0, 0.0, 1920.0, 1080.0)


def test_display_at_maps_points_and_falls_back_to_primary(desktop):
    assert desktop.backend.display_at(100, 100) == r"\\.\DISPLAY1"
    assert desktop.backend.display_at(2000.5, 10) == r"\\.\DISPLAY2"
    assert desktop.backend.display_at(-5000, -5000) == r"\\.\DISPLAY1"


def test_running_pid_prefers_the_process_with_windows(desktop):
    assert desktop.backend.running_pid(CODE) == 2
    assert desktop.backend.running_pid(r"C:\nowhere\missing.exe") is None


def test_set_position_and_size(desktop):
    backend = desktop.backend
    assert backend.set_position(100, 50, 60) is True
    assert backend.set_size(100, 640, 480) is True
    assert backend.read_frame(100) == desktop.mod.WindowFrame(50.0, 60.0, 640.0, 480.0)


def test_set_position_restores_maximised_window_first(desktop):
    desktop.gui.windows[200]["zoomed"] = True
    assert desktop.backend.set_position(200, 0, 0) is True
    assert desktop.gui.calls[0] == ("ShowWindow", 200, 4)


def test_geometry_errors_report_failure(desktop):
    assert desktop.backend.set_size(999, 1, 1) is False
    assert desktop.backend.read_frame(999) is None


def test_activate_restores_and_focuses_first_window(desktop):
    desktop.gui.windows[200]["iconic"] = True
    desktop.backend.activate(2)
    assert ("ShowWindow", 200, 9) in desktop.gui.calls
    assert ("SetForegroundWindow", 200) in desktop.gui.calls


def test_launch_of_missing_executable_fails_without_spawning(desktop, monkeypatch):
    spawned = []
    monkeypatch.setattr(desktop.mod.subprocess, "Popen", lambda *a, **k: spawned.append(a))
    assert desktop.backend.launch(r"C:\nowhere\missing.exe", timeout=0.1) is False
    assert spawned == []


def test_launch_waits_until_the_app_is_running(desktop, monkeypatch, tmp_path):
    exe = tmp_path / "tool.exe"
    exe.write_text("", encoding="utf-8")
    spawned = []
    monkeypatch.setattr(desktop.mod.subprocess, "Popen", lambda args, **k: spawned.append(args))
    monkeypatch.setattr(desktop.mod.time, "sleep", lambda _s: None)
    answers = iter([None, None, 77])
    monkeypatch.setattr(desktop.backend, "running_pid", lambda _app: next(answers))

    assert desktop.backend.launch(str(exe), timeout=5.0) is True
    assert spawned == [[str(exe)]]
