"""
recall_cli.py  –  Command-line host for saving and restoring window layouts
==========================================================================

  recall save "Work"            capture the desktop into layout "Work"
  recall save "Work" --force    replace an existing layout
  recall restore "Work"
  recall list
  recall delete "Work"
  recall path "Work"            print where the layout file lives
  recall edit "Work"            open the layout file in the default editor

Settings come from config.json (see Settings); everything the engine does is
logged to recall_debug.log in the data directory.
"""

import argparse
import json
import logging
import os
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Callable, Dict, List, Optional

from layout_store import LayoutNameCollision, LayoutNotFound, LayoutStore
from window_layout import (
    DEFAULT_FRAME_SETTLE_DELAY,
    DEFAULT_LAUNCH_TIMEOUT,
    DEFAULT_SETTLE_DELAY,
    CaptureFailure,
    RecallError,
    RestoreEngine,
    capture_layout,
)

CONFIG_PATH = "config.json"
LOG_FORMAT  = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"

PERMISSION_HINT = (
    "Make sure this program is allowed to read and move other applications' "
    "windows (run it in the same session, and elevated if the target apps are)."
)

log = logging.getLogger("recall")


# ══════════════════════════════════════════════════════════════════════════
#  Settings
# ══════════════════════════════════════════════════════════════════════════
def default_data_dir() -> Path:
    override = os.environ.get("RECALL_HOME")
    if override:
        return Path(override)
    appdata = os.environ.get("APPDATA")
    if appdata:
        return Path(appdata) / "Recall"
    return Path.home() / ".recall"


@dataclass
class Settings:
    layouts_dir:        Path  = field(default_factory=lambda: default_data_dir() / "layouts")
    log_file:           Path  = field(default_factory=lambda: default_data_dir() / "recall_debug.log")
    log_level:          str   = "DEBUG"
    settle_delay:       float = DEFAULT_SETTLE_DELAY
    frame_settle_delay: float = DEFAULT_FRAME_SETTLE_DELAY
    launch_timeout:     float = DEFAULT_LAUNCH_TIMEOUT


def _load_config(path: str = CONFIG_PATH) -> Dict:
    if not os.path.exists(path):
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            d = json.load(f)
        return d if isinstance(d, dict) else {}
    except (OSError, ValueError) as exc:
        log.warning("ignoring unreadable config %s: %s", path, exc)
        return {}


def load_settings(path: str = CONFIG_PATH) -> Settings:
    """Settings from `path`; missing keys and bad values keep their defaults."""
    cfg = _load_config(path)
    settings = Settings()
    for f in fields(Settings):
        if f.name not in cfg:
            continue
        raw = cfg[f.name]
        current = getattr(settings, f.name)
        if isinstance(current, Path) and isinstance(raw, str) and raw.strip():
            setattr(settings, f.name, Path(os.path.expanduser(raw)))
        elif isinstance(current, float) and isinstance(raw, (int, float)) \
                and not isinstance(raw, bool) and raw >= 0:
            setattr(settings, f.name, float(raw))
        elif isinstance(current, str) and isinstance(raw, str) \
                and isinstance(logging.getLevelName(raw.upper()), int):
            setattr(settings, f.name, raw.upper())
        else:
            log.warning("config %s: ignoring invalid %s=%r", path, f.name, raw)
    return settings


# ══════════════════════════════════════════════════════════════════════════
#  Logging
# ══════════════════════════════════════════════════════════════════════════
def configure_logging(settings: Settings, verbose: bool = False) -> logging.Logger:
    """
    Install the process-wide handlers once: a debug file log and a console
    handler (warnings, or everything with --verbose).
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_recall", False):
            root.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT)
    handlers: List[logging.Handler] = []
    try:
        settings.log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(settings.log_file, encoding="utf-8")
        file_handler.setLevel(settings.log_level)
        handlers.append(file_handler)
    except OSError as exc:
        print(f"  Warning: cannot write log file {settings.log_file}: {exc}", file=sys.stderr)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.DEBUG if verbose else logging.WARNING)
    handlers.append(console)

    for handler in handlers:
        handler.setFormatter(formatter)
        handler._recall = True
        root.addHandler(handler)
    root.setLevel(logging.DEBUG)
    return log


# ══════════════════════════════════════════════════════════════════════════
#  Commands
# ══════════════════════════════════════════════════════════════════════════
def _default_backend():
    from win32_backend import Win32Backend
    return Win32Backend(logger=logging.getLogger("recall.win32"))


def cmd_save(store: LayoutStore, backend, name: str, force: bool = False) -> int:
    name = name.strip()
    if not name:
        print("Invalid name: please enter a name for the layout.")
        return 1
    if store.exists(name) and not force:
        print(f"A layout named \"{name}\" already exists. Use --force to replace it.")
        return 1
    try:
        layout = capture_layout(name, backend.running_apps(), backend, backend,
                                logger=logging.getLogger("recall.capture"))
    except CaptureFailure as exc:
        print(f"Capture failed: {exc}.\n{PERMISSION_HINT}")
        return 1
    try:
        path = store.save(layout)
    except (OSError, LayoutNameCollision) as exc:
        print(f"Save failed: {exc}")
        return 1
    print(f"Saved {layout.window_count} windows on {len(layout.displays)} displays -> {path}")
    return 0


def cmd_restore(store: LayoutStore, engine: RestoreEngine, name: str) -> int:
    try:
        layout = store.load(name)
    except LayoutNotFound as exc:
        print(str(exc))
        return 1
    except (OSError, ValueError) as exc:
        print(f"Cannot read layout {name!r}: {exc}")
        return 1

    future = engine.restore_layout_async(layout)
    try:
        restored, total = future.result()
    finally:
        engine.shutdown()

    if total == 0:
        print(f"Nothing was restored.\n{PERMISSION_HINT}")
        return 1
    if restored < total:
        print(f"Restored {restored} of {total} windows. Some windows could not be restored.")
        return 2
    return 0


def cmd_list(store: LayoutStore) -> int:
    layouts = store.load_all()
    if not layouts:
        print("No saved layouts")
        return 0
    for layout in layouts:
        stamp = layout.created_at.strftime("%Y-%m-%d %H:%M")
        print(f"  {layout.name:<30} {stamp}  {layout.window_count:>3} windows")
    return 0


def cmd_delete(store: LayoutStore, name: str) -> int:
    try:
        store.delete(name)
    except LayoutNotFound as exc:
        print(str(exc))
        return 1
    except OSError as exc:
        print(f"Delete failed: {exc}")
        return 1
    print(f"Deleted \"{name}\"")
    return 0


def cmd_path(store: LayoutStore, name: str) -> int:
    print(store.locate(name))
    return 0 if store.exists(name) else 1


def cmd_edit(store: LayoutStore, name: str,
             opener: Optional[Callable[[str], None]] = None) -> int:
    if not store.exists(name):
        print(f"no layout named {name!r}")
        return 1
    path = str(store.locate(name))
    opener = opener or getattr(os, "startfile", None)
    if opener is None:
        print(path)
        return 0
    opener(path)
    return 0


# ══════════════════════════════════════════════════════════════════════════
#  CLI entry point
# ══════════════════════════════════════════════════════════════════════════
def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="recall",
        description="Save and restore window layouts across displays."
    )
    p.add_argument("--config", default=CONFIG_PATH)
    p.add_argument("--verbose", "-v", action="store_true")
    s = p.add_subparsers(dest="cmd", required=True)

    sp = s.add_parser("save", help="Capture the current windows into a layout")
    sp.add_argument("name")
    sp.add_argument("--force", "-f", action="store_true",
                    help="Replace an existing layout with the same name")

    sp = s.add_parser("restore", help="Move windows back to a saved layout")
    sp.add_argument("name")

    s.add_parser("list", help="List saved layouts")

    sp = s.add_parser("delete", help="Delete a saved layout")
    sp.add_argument("name")

    sp = s.add_parser("path", help="Print the file a layout is stored in")
    sp.add_argument("name")

    sp = s.add_parser("edit", help="Open a layout file in the default editor")
    sp.add_argument("name")
    return p


def main(argv: Optional[List[str]] = None, backend=None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings(args.config)
    logger = configure_logging(settings, verbose=args.verbose)
    logger.debug("command %s", args.cmd)

    store = LayoutStore(settings.layouts_dir, logger=logging.getLogger("recall.store"))

    try:
        if args.cmd == "list":
            return cmd_list(store)
        if args.cmd == "delete":
            return cmd_delete(store, args.name)
        if args.cmd == "path":
            return cmd_path(store, args.name)
        if args.cmd == "edit":
            return cmd_edit(store, args.name)

        backend = backend or _default_backend()
        if args.cmd == "save":
            return cmd_save(store, backend, args.name, force=args.force)

        engine = RestoreEngine(
            backend,
            logger=logging.getLogger("recall.restore"),
            settle_delay=settings.settle_delay,
            frame_settle_delay=settings.frame_settle_delay,
            launch_timeout=settings.launch_timeout,
        )
        return cmd_restore(store, engine, args.name)
    except RecallError as exc:
        logger.error("%s failed: %s", args.cmd, exc)
        print(f"Error: {exc}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
