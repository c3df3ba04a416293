"""The service core: runs the cgroup monitor and the route manager together."""

from __future__ import annotations

import asyncio
import logging

from .config import Config
from .interfaces import CGroupMonitor, RouteManagerProtocol

_LOG = logging.getLogger(__name__)


class CGTProxyError(Exception):
    """The core could not be created or one of its components failed."""


class CGTProxy:
    """Runs the cgroup monitor and the route manager until one fails or both are cancelled."""

    def __init__(
        self,
        config: Config | None,
        monitor: CGroupMonitor | None,
        route_manager: RouteManagerProtocol | None,
        logger: logging.Logger | None = None,
    ):
        if config is None:
            raise CGTProxyError("create new cgtproxy core: config is missing.")
        if monitor is None:
            raise CGTProxyError("create new cgtproxy core: cgroup monitor is missing.")
        if route_manager is None:
            raise CGTProxyError("create new cgtproxy core: route manager is missing.")
        self._cfg = config
        self._monitor = monitor
        self._route_manager = route_manager
        self._log = logger or _LOG
        self._log.debug("Create a new core. configuration: %s", config)

    @property
    def config(self) -> Config:
        return self._cfg

    @property
    def monitor(self) -> CGroupMonitor:
        return self._monitor

    @property
    def route_manager(self) -> RouteManagerProtocol:
        return self._route_manager

    async def _run_route_manager(self) -> None:
        self._log.debug("Start route manager.")
        try:
            await self._route_manager.run_route_manager()
        finally:
            self._log.debug("Route manager exited.")

    async def _run_cgroup_monitor(self) -> None:
        self._log.debug("Start filesystem watcher.")
        try:
            await self._monitor.run_cgroup_monitor()
        finally:
            self._log.debug("Filesystem watcher exited.")

    async def run_cgtproxy(self) -> None:
        """Run both components; the first failure cancels the other and is raised."""
        self._log.debug("CGTProxy starting.")
        tasks = [
            asyncio.create_task(self._run_cgroup_monitor(), name="cgroup-monitor"),
            asyncio.create_task(self._run_route_manager(), name="route-manager"),
        ]
        error: BaseException | None = None
        try:
            pending = set(tasks)
            while pending and error is None:
                done, pending = await asyncio.wait(
                    pending, return_when=asyncio.FIRST_EXCEPTION
                )
                for task in done:
                    if task.cancelled() or error is not None:
                        continue
                    error = task.exception()
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self._log.debug("CGTProxy exiting.")
        if error is not None:
            raise CGTProxyError(f"running cgtproxy core: {error}") from error