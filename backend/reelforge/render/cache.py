"""Content-addressed cache of encoded renders.

Keys are ``<version>:<sha256>`` over the template structure, the sorted
content entries and the output parameters. Bumping the version prefix orphans
every older entry at once. Entries are immutable; the only removal is
insertion-order eviction once ``max_entries`` is exceeded.
"""

import hashlib
import json
import logging
import os
import tempfile
import threading
from collections import OrderedDict
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from reelforge.config import get_settings
from reelforge.schemas.template import VideoTemplate

logger = logging.getLogger(__name__)

INDEX_FILE = "index.json"


def build_cache_key(
    template: VideoTemplate,
    content: Mapping[str, str],
    *,
    source_id: str = "",
    width: int | None = None,
    height: int | None = None,
    fps: float | None = None,
    version: str | None = None,
) -> str:
    """Version-prefixed hash of everything that changes the encoded output."""
    settings = get_settings()
    default_style = (
        template.default_text_style.model_dump(mode="json", by_alias=True, exclude_unset=True)
        if template.default_text_style
        else None
    )
    payload: dict[str, Any] = {
        "duration": template.duration,
        "scenes": template.scene_payload(),
        "defaultTextStyle": default_style,
        "content": sorted(content.items()),
        "source": source_id,
        "output": [
            width or settings.render_output_width,
            height or settings.render_output_height,
            fps or settings.render_fps,
        ],
    }
    digest = hashlib.sha256(
        json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode()
    ).hexdigest()
    return f"{version or settings.render_cache_version}:{digest}"


class RenderCache:
    """Thread-safe bounded store of encoded outputs.

    With ``directory`` set, entries persist as one file each plus an
    ``index.json`` recording insertion order; writes go through a temp file
    and ``os.replace`` so readers never see a partial entry.
    """

    def __init__(
        self,
        max_entries: int | None = None,
        directory: str | None = None,
        version: str | None = None,
    ):
        settings = get_settings()
        self.max_entries = max_entries if max_entries is not None else settings.render_cache_max_entries
        self.version = version or settings.render_cache_version
        self.directory = Path(directory) if directory else None
        self._lock = threading.Lock()
        # key -> bytes (memory) or key -> file name (directory)
        self._entries: OrderedDict[str, Any] = OrderedDict()
        self.hits = 0
        self.misses = 0

        if self.directory is not None:
            self.directory.mkdir(parents=True, exist_ok=True)
            self._load_index()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _file_for(self, key: str) -> str:
        return hashlib.sha256(key.encode()).hexdigest()[:32] + ".mp4"

    def _load_index(self) -> None:
        index_path = self.directory / INDEX_FILE
        if not index_path.exists():
            return
        try:
            entries = json.loads(index_path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"[CACHE] Ignoring unreadable index {index_path}: {e}")
            return
        stale = 0
        for item in entries:
            key, name = item.get("key"), item.get("file")
            if not key or not name:
                continue
            if not key.startswith(f"{self.version}:"):
                (self.directory / name).unlink(missing_ok=True)
                stale += 1
            elif (self.directory / name).exists():
                self._entries[key] = name
        if stale:
            logger.info(f"[CACHE] Dropped {stale} entries from older cache versions")
            self._write_index()
        logger.info(f"[CACHE] Loaded {len(self._entries)} entries from {self.directory}")

    def _atomic_write(self, path: Path, data: bytes) -> None:
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=".tmp_")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp, path)
        except OSError:
            Path(tmp).unlink(missing_ok=True)
            raise

    def _write_index(self) -> None:
        entries = [{"key": key, "file": name} for key, name in self._entries.items()]
        self._atomic_write(self.directory / INDEX_FILE, json.dumps(entries).encode())

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get(self, key: str) -> bytes | None:
        """Cached output, or None on a miss or a key from another cache version."""
        with self._lock:
            if not key.startswith(f"{self.version}:") or key not in self._entries:
                self.misses += 1
                return None
            value = self._entries[key]
            if self.directory is None:
                self.hits += 1
                return value
            path = self.directory / value
            try:
                data = path.read_bytes()
            except OSError as e:
                logger.warning(f"[CACHE] Entry file missing for {key[:16]}: {e}")
                del self._entries[key]
                self.misses += 1
                return None
            self.hits += 1
            return data

    def put(self, key: str, output: bytes) -> None:
        """Store ``output``; an existing key is left untouched."""
        if not output:
            raise ValueError("Refusing to cache empty output")
        with self._lock:
            if key in self._entries:
                return
            if self.directory is None:
                self._entries[key] = output
            else:
                name = self._file_for(key)
                self._atomic_write(self.directory / name, output)
                self._entries[key] = name
            logger.info(f"[CACHE] Stored {key[:24]} ({len(output)} bytes)")
            self._evict()
            if self.directory is not None:
                self._write_index()

    def _evict(self) -> None:
        while len(self._entries) > self.max_entries:
            key, value = self._entries.popitem(last=False)
            logger.info(f"[CACHE] Evicted {key[:24]}")
            if self.directory is not None:
                (self.directory / value).unlink(missing_ok=True)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._lock:
            if self.directory is not None:
                for name in self._entries.values():
                    (self.directory / name).unlink(missing_ok=True)
                self._entries.clear()
                self._write_index()
            else:
                self._entries.clear()


_render_cache: RenderCache | None = None


def get_render_cache() -> RenderCache:
    """Process-wide cache built from settings."""
    global _render_cache
    if _render_cache is None:
        settings = get_settings()
        _render_cache = RenderCache(directory=settings.render_cache_dir or None)
    return _render_cache
