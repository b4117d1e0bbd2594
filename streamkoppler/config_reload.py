"""Hot reload of the gateway config file via watchdog."""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .config import GatewayConfig, load_config

LOG = logging.getLogger(__name__)

ReloadCallback = Callable[[GatewayConfig], Awaitable[None]]


def event_touches_file(event: FileSystemEvent, watch_name: str) -> bool:
    """Return true when a filesystem event concerns the watched file name."""
    if getattr(event, "is_directory", False):
        return False
    for attr in ("src_path", "dest_path"):
        path = getattr(event, attr, None)
        if path and Path(str(path)).name == watch_name:
            return True
    return False


def file_digest(path: Path) -> str | None:
    """Hash the file content; None when the file is missing."""
    try:
        return hashlib.sha256(path.read_bytes()).hexdigest()
    except FileNotFoundError:
        return None


class _ChangeSignal(FileSystemEventHandler):
    """Forward matching watchdog events from the observer thread to the loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, changed: asyncio.Event, watch_name: str) -> None:
        self._loop = loop
        self._changed = changed
        self._watch_name = watch_name

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event_touches_file(event, self._watch_name):
            self._loop.call_soon_threadsafe(self._changed.set)


class ConfigFileWatcher:
    """Reload the config when its content changes and hand valid configs to a callback.

    Events are debounced so editors that write in several steps trigger one
    reload. An invalid file keeps the running configuration.
    """

    def __init__(
        self,
        config_file: Path,
        on_reload: ReloadCallback,
        *,
        debounce_seconds: float = 0.25,
        loader: Callable[[str], GatewayConfig] = load_config,
    ) -> None:
        self.config_file = config_file
        self._on_reload = on_reload
        self._debounce = debounce_seconds
        self._loader = loader
        self._digest = file_digest(config_file)

    async def reload_if_changed(self) -> bool:
        """Validate and apply the file when its content differs from the last one applied."""
        digest = file_digest(self.config_file)
        if digest is None or digest == self._digest:
            return False
        try:
            new_cfg = self._loader(str(self.config_file))
        except Exception as exc:
            LOG.warning("config reload rejected path=%s error=%s", self.config_file, exc)
            self._digest = digest
            return False
        await self._on_reload(new_cfg)
        self._digest = digest
        LOG.info("config reloaded path=%s", self.config_file)
        return True

    async def _watch_once(self) -> None:
        loop = asyncio.get_running_loop()
        changed = asyncio.Event()
        observer: Any = Observer()
        observer.schedule(
            _ChangeSignal(loop, changed, self.config_file.name),
            str(self.config_file.parent.resolve()),
            recursive=False,
        )
        observer.start()
        try:
            while True:
                await changed.wait()
                await asyncio.sleep(self._debounce)
                changed.clear()
                await self.reload_if_changed()
        finally:
            observer.stop()
            with contextlib.suppress(RuntimeError):
                await asyncio.to_thread(observer.join, 2.0)

    async def run_forever(self) -> None:
        """Watch until cancelled, restarting the observer after failures."""
        while True:
            try:
                await self._watch_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOG.warning("config watcher failed, restarting in 1s error=%s", exc)
                await asyncio.sleep(1.0)
