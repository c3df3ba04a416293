"""Watches the cgroup v2 file system and reports cgroups as they come and go."""

from __future__ import annotations

import asyncio
import logging
import os
import re
from collections.abc import AsyncIterator, Callable, Mapping
from typing import Any

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .config import CgroupRootNotFoundError
from .types import CGroupEvent, CGroupEvents, CgroupEventType

BUFFER_SIZE_ENV = "CGTPROXY_MONITOR_BUFFER_SIZE"
DEFAULT_BUFFER_SIZE = 1024

_INTEGER = re.compile(r"[+-]?[0-9]+")
_LOG = logging.getLogger(__name__)


def buffer_size_from_env(environ: Mapping[str, str] | None = None) -> int:
    """Return the notification buffer size configured in the environment."""
    env = os.environ if environ is None else environ
    value = env.get(BUFFER_SIZE_ENV, "")
    if not value:
        return DEFAULT_BUFFER_SIZE
    if not _INTEGER.fullmatch(value):
        _LOG.warning(
            "Invalid buffer size in %s, using default. value: %r", BUFFER_SIZE_ENV, value
        )
        return DEFAULT_BUFFER_SIZE
    size = int(value)
    if size < 1:
        _LOG.warning("Buffer size must be greater than 0, using default. value: %d", size)
        return DEFAULT_BUFFER_SIZE
    return size


class _Handler(FileSystemEventHandler):
    """Forwards creations and removals from the watcher thread to the event loop."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        inbox: asyncio.Queue[tuple[str, CgroupEventType]],
        log: logging.Logger,
    ):
        super().__init__()
        self._loop = loop
        self._inbox = inbox
        self._log = log

    def on_created(self, event: FileSystemEvent) -> None:
        self._forward(event, CgroupEventType.NEW)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._forward(event, CgroupEventType.DELETE)

    def _forward(self, event: FileSystemEvent, kind: CgroupEventType) -> None:
        path = os.fsdecode(event.src_path)
        try:
            self._loop.call_soon_threadsafe(self._enqueue, path, kind)
        except RuntimeError:
            self._log.debug("Event loop closed, dropping notification for %s.", path)

    def _enqueue(self, path: str, kind: CgroupEventType) -> None:
        try:
            self._inbox.put_nowait((path, kind))
        except asyncio.QueueFull:
            self._log.warning(
                "Notification buffer is full, dropping %s event for %s. "
                "Consider increasing %s.",
                kind,
                path,
                BUFFER_SIZE_ENV,
            )


class CGroupFSMonitor:
    """Publishes batches of cgroup events found under the cgroup v2 mount point."""

    def __init__(
        self,
        cgroup_root: str,
        logger: logging.Logger | None = None,
        environ: Mapping[str, str] | None = None,
        observer_factory: Callable[[], Any] = Observer,
    ):
        if not cgroup_root:
            raise CgroupRootNotFoundError("cgroup v2 file system mount point is missing.")
        self._root = cgroup_root.rstrip("/") or "/"
        self._log = logger or _LOG
        self._buffer_size = buffer_size_from_env(environ)
        self._observer_factory = observer_factory
        self._out: asyncio.Queue[CGroupEvents | None] = asyncio.Queue(maxsize=1)
        self._closed = False
        self._log.debug(
            "Create a cgroupv2 filesystem monitor. buffer_size: %d", self._buffer_size
        )

    @property
    def buffer_size(self) -> int:
        return self._buffer_size

    async def events(self) -> AsyncIterator[CGroupEvents]:
        """Iterate over event batches until the monitor stops."""
        while True:
            if self._closed and self._out.empty():
                return
            batch = await self._out.get()
            if batch is None:
                self._out.put_nowait(None)
                return
            yield batch

    def walk(self) -> list[CGroupEvent]:
        """List every cgroup below the root as a new-cgroup event."""

        def on_error(error: OSError) -> None:
            if isinstance(error, FileNotFoundError):
                self._log.debug("Cgroup had been removed. path: %s", error.filename)
                return
            self._log.error(
                "Errors occurred while first time going through cgroupfs. path: %s, error: %s",
                error.filename,
                error,
            )

        found = []
        for dirpath, dirnames, _ in os.walk(self._root, onerror=on_error):
            dirnames.sort()
            path = dirpath.rstrip("/")
            if path == self._root or (not path and self._root == "/"):
                continue
            found.append(CGroupEvent(path=path, event_type=CgroupEventType.NEW))
        return found

    async def _send(self, batch: CGroupEvents) -> None:
        for event in batch.events:
            event.path = event.path.rstrip("/")
        count = len(batch.events)
        self._log.debug("New cgroup events. size: %d", count)
        await self._out.put(batch)
        self._log.debug("Cgroup events sent. size: %d", count)

    def _close(self) -> None:
        self._closed = True
        try:
            self._out.put_nowait(None)
        except asyncio.QueueFull:
            pass

    async def run_cgroup_monitor(self) -> None:
        """Watch the file system until cancelled."""
        loop = asyncio.get_running_loop()
        inbox: asyncio.Queue[tuple[str, CgroupEventType]] = asyncio.Queue(
            maxsize=self._buffer_size
        )
        try:
            observer = self._observer_factory()
            observer.schedule(_Handler(loop, inbox, self._log), self._root, recursive=True)
            observer.start()
            try:
                self._log.info("Going through cgroupfs first time...")
                found = await asyncio.to_thread(self.walk)
                self._log.info("Going through cgroupfs first time...Done.")
                await self._send(CGroupEvents(events=found))

                while True:
                    path, kind = await inbox.get()
                    self._log.debug("New filesystem notify arrived. event: %s, path: %s", kind, path)
                    await self._send(
                        CGroupEvents(events=[CGroupEvent(path=path, event_type=kind)])
                    )
            finally:
                observer.stop()
                observer.join()
        finally:
            self._close()