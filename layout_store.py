"""
layout_store.py  –  Named layouts as JSON files in one directory
================================================================

One file per layout: <name_to_key(name)>.json, pretty-printed, keys sorted,
UTF-8.  The layout name is the only identity; saving an existing name
replaces the file atomically.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import List, Optional, Union

from window_layout import Layout, RecallError

log = logging.getLogger(__name__)

SUFFIX = ".json"

# Characters that are unsafe in a file name on at least one platform.  "%"
# is the escape character itself.
_UNSAFE = set('%/\\:*?"<>|')

# Device names Windows reserves, with or without an extension.
_RESERVED = {"CON", "PRN", "AUX", "NUL"} | {f"{dev}{n}" for dev in ("COM", "LPT") for n in range(1, 10)}


class LayoutNotFound(RecallError, KeyError):
    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "layout not found"


class LayoutNameCollision(RecallError):
    """A different layout already lives at the file this name maps to."""


def _escape(ch: str) -> str:
    return "".join(f"%{b:02X}" for b in ch.encode("utf-8"))


def name_to_key(name: str) -> str:
    """
    Map a layout name to its storage key (file name without suffix).

    Unsafe characters are percent-encoded, so distinct names always give
    distinct keys and key_to_name() reverses the mapping.  A leading "." and
    trailing dots or spaces are encoded too (hidden files, and names Windows
    silently trims), as is the first character of a reserved device name
    ("nul", "COM1.old").
    """
    if not name:
        raise ValueError("layout name must not be empty")
    out = [_escape(ch) if ch in _UNSAFE or ord(ch) < 0x20 or ch == "\x7f" else ch
           for ch in name]
    if out[0] == ".":
        out[0] = _escape(".")
    if name.split(".", 1)[0].rstrip(" ").upper() in _RESERVED:
        out[0] = _escape(name[0])
    i = len(out) - 1
    while i >= 0 and out[i] in (".", " "):
        out[i] = _escape(out[i])
        i -= 1
    return "".join(out)


def key_to_name(key: str) -> str:
    """Inverse of name_to_key()."""
    raw = bytearray()
    i = 0
    while i < len(key):
        ch = key[i]
        if ch == "%" and _is_hex(key[i + 1:i + 3]):
            raw.append(int(key[i + 1:i + 3], 16))
            i += 3
        else:
            raw.extend(ch.encode("utf-8"))
            i += 1
    return raw.decode("utf-8")


def _is_hex(text: str) -> bool:
    return len(text) == 2 and all(c in "0123456789abcdefABCDEF" for c in text)


def _write_atomic(path: Path, text: str) -> None:
    """temp file + fsync + os.replace: the target is never half written."""
    tmp_fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp",
                                        dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(str(tmp_path), str(path))
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


class LayoutStore:
    """Save, list and delete layouts under `directory`."""

    def __init__(self, directory: Union[str, Path],
                 logger: Optional[logging.Logger] = None) -> None:
        self.directory = Path(directory)
        self.log = logger or log

    def _ensure_dir(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, name: str) -> Path:
        return self.directory / (name_to_key(name) + SUFFIX)

    def locate(self, layout: Union[Layout, str]) -> Path:
        name = layout.name if isinstance(layout, Layout) else layout
        return self._path(name)

    def exists(self, name: str) -> bool:
        if not name:
            return False
        path = self._path(name)
        return path.is_file() and self._owned_by(path, name)

    def _owned_by(self, path: Path, name: str) -> bool:
        # A case-insensitive filesystem can hand back another layout's file.
        stored = self._stored_name(path)
        return stored is None or stored == name

    def save(self, layout: Layout) -> Path:
        self._ensure_dir()
        path = self._path(layout.name)
        if path.exists():
            stored = self._stored_name(path)
            if stored is not None and stored != layout.name:
                raise LayoutNameCollision(
                    f"{layout.name!r} maps to {path.name}, which holds layout {stored!r}"
                )
        text = json.dumps(layout.to_dict(), indent=2, sort_keys=True, ensure_ascii=False)
        _write_atomic(path, text + "\n")
        self.log.info("store: saved %r -> %s", layout.name, path)
        return path

    def load(self, name: str) -> Layout:
        path = self._path(name)
        if not path.is_file():
            raise LayoutNotFound(f"no layout named {name!r}")
        layout = self._read(path)
        if layout.name != name:
            raise LayoutNotFound(f"no layout named {name!r} ({path.name} holds {layout.name!r})")
        return layout

    def load_all(self) -> List[Layout]:
        """Every readable layout, sorted by name (case-insensitive)."""
        self._ensure_dir()
        layouts: List[Layout] = []
        for path in sorted(self.directory.iterdir()):
            if path.name.startswith(".") or path.suffix != SUFFIX or not path.is_file():
                continue
            try:
                layouts.append(self._read(path))
            except (OSError, ValueError) as exc:
                self.log.warning("store: skipping %s: %s", path.name, exc)
        layouts.sort(key=lambda l: l.name.casefold())
        return layouts

    def delete(self, layout: Union[Layout, str]) -> None:
        name = layout.name if isinstance(layout, Layout) else layout
        path = self._path(name)
        if path.is_file() and not self._owned_by(path, name):
            raise LayoutNotFound(f"no layout named {name!r} ({path.name} holds another layout)")
        try:
            path.unlink()
        except FileNotFoundError:
            raise LayoutNotFound(f"no layout named {name!r}")
        self.log.info("store: deleted %s", path)

    def _read(self, path: Path) -> Layout:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        return Layout.from_dict(data)

    def _stored_name(self, path: Path) -> Optional[str]:
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError):
            return None
        name = data.get("name") if isinstance(data, dict) else None
        return name if isinstance(name, str) else None
