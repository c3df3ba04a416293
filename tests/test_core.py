import asyncio

import pytest

from cgtproxy.config import Config
from cgtproxy.core import CGTProxy, CGTProxyError


class FakeComponent:
    def __init__(self, error=None, delay=0.0, finish=False):
        self.error = error
        self.delay = delay
        self.finish = finish
        self.started = False
        self.cancelled = False
        self.finished = False

    async def _run(self):
        self.started = True
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
            if self.finish:
                self.finished = True
                return
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise


class FakeMonitor(FakeComponent):
    async def run_cgroup_monitor(self):
        await self._run()

    async def events(self):
        if False:
            yield None


class FakeRouteManager(FakeComponent):
    async def run_route_manager(self):
        await self._run()


def test_missing_config_is_rejected():
    with pytest.raises(CGTProxyError, match="config is missing."):
        CGTProxy(None, FakeMonitor(), FakeRouteManager())


def test_missing_monitor_is_rejected():
    with pytest.raises(CGTProxyError, match="cgroup monitor is missing."):
        CGTProxy(Config(), None, FakeRouteManager())


def test_missing_route_manager_is_rejected():
    with pytest.raises(CGTProxyError, match="route manager is missing."):
        CGTProxy(Config(), FakeMonitor(), None)


def test_components_are_exposed():
    cfg = Config()
    monitor = FakeMonitor()
    manager = FakeRouteManager()
    proxy = CGTProxy(cfg, monitor, manager)
    assert proxy.config is cfg
    assert proxy.monitor is monitor
    assert proxy.route_manager is manager


@pytest.mark.asyncio
async def test_monitor_failure_cancels_route_manager():
    failure = RuntimeError("watch failed")
    monitor = FakeMonitor(error=failure, delay=0.01)
    manager = FakeRouteManager()
    proxy = CGTProxy(Config(), monitor, manager)

    with pytest.raises(CGTProxyError, match="running cgtproxy core") as info:
        await proxy.run_cgtproxy()

    assert info.value.__cause__ is failure
    assert manager.started
    assert manager.cancelled


@pytest.mark.asyncio
async def test_route_manager_failure_cancels_monitor():
    failure = OSError("nft failed")
    monitor = FakeMonitor()
    manager = FakeRouteManager(error=failure, delay=0.01)
    proxy = CGTProxy(Config(), monitor, manager)

    with pytest.raises(CGTProxyError) as info:
        await proxy.run_cgtproxy()

    assert info.value.__cause__ is failure
    assert monitor.cancelled


@pytest.mark.asyncio
async def test_normal_exit_of_one_component_keeps_other_running():
    monitor = FakeMonitor(finish=True)
    failure = ValueError("late failure")
    manager = FakeRouteManager(error=failure, delay=0.02)
    proxy = CGTProxy(Config(), monitor, manager)

    with pytest.raises(CGTProxyError) as info:
        await proxy.run_cgtproxy()

    assert monitor.finished
    assert info.value.__cause__ is failure


@pytest.mark.asyncio
async def test_both_components_finishing_returns():
    monitor = FakeMonitor(finish=True)
    manager = FakeRouteManager(finish=True)
    proxy = CGTProxy(Config(), monitor, manager)

    result = await proxy.run_cgtproxy()

    assert result is None
    assert monitor.finished and manager.finished


@pytest.mark.asyncio
async def test_cancellation_reaches_both_components():
    monitor = FakeMonitor()
    manager = FakeRouteManager()
    proxy = CGTProxy(Config(), monitor, manager)

    task = asyncio.create_task(proxy.run_cgtproxy())
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert monitor.cancelled
    assert manager.cancelled