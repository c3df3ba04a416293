import asyncio

import pytest
from watchdog.events import DirCreatedEvent, DirDeletedEvent

from cgtproxy.cgfsmon import (
    BUFFER_SIZE_ENV,
    DEFAULT_BUFFER_SIZE,
    CGroupFSMonitor,
    buffer_size_from_env,
)
from cgtproxy.config import CgroupRootNotFoundError
from cgtproxy.types import CgroupEventType


class FakeObserver:
    def __init__(self):
        self.handler = None
        self.path = None
        self.recursive = None
        self.started = False
        self.stopped = False
        self.joined = False

    def schedule(self, handler, path, recursive=False):
        self.handler = handler
        self.path = path
        self.recursive = recursive

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True

    def join(self, timeout=None):
        self.joined = True


def test_buffer_size_default():
    assert buffer_size_from_env({}) == 1024
    assert DEFAULT_BUFFER_SIZE == 1024


def test_buffer_size_from_valid_value():
    assert buffer_size_from_env({BUFFER_SIZE_ENV: "16"}) == 16


@pytest.mark.parametrize("value", ["abc", "0", "-5", "1.5", " 8"])
def test_buffer_size_invalid_falls_back(value):
    assert buffer_size_from_env({BUFFER_SIZE_ENV: value}) == DEFAULT_BUFFER_SIZE


def test_monitor_uses_environment_buffer_size(tmp_path):
    mon = CGroupFSMonitor(str(tmp_path), environ={BUFFER_SIZE_ENV: "7"})
    assert mon.buffer_size == 7


def test_empty_root_rejected():
    with pytest.raises(CgroupRootNotFoundError):
        CGroupFSMonitor("")


def test_walk_lists_directories_in_order(tmp_path):
    (tmp_path / "b").mkdir()
    (tmp_path / "a" / "x").mkdir(parents=True)
    (tmp_path / "file").write_text("content")
    mon = CGroupFSMonitor(str(tmp_path) + "/", environ={})
    events = mon.walk()
    assert [e.path for e in events] == [
        str(tmp_path / "a"),
        str(tmp_path / "a" / "x"),
        str(tmp_path / "b"),
    ]
    assert all(e.event_type is CgroupEventType.NEW for e in events)


@pytest.mark.asyncio
async def test_run_sends_walk_then_notifications(tmp_path):
    (tmp_path / "a").mkdir()
    observer = FakeObserver()
    mon = CGroupFSMonitor(str(tmp_path), environ={}, observer_factory=lambda: observer)
    stream = mon.events()
    task = asyncio.create_task(mon.run_cgroup_monitor())

    first = await asyncio.wait_for(anext(stream), 5)
    assert [(e.path, e.event_type) for e in first.events] == [
        (str(tmp_path / "a"), CgroupEventType.NEW)
    ]
    assert observer.path == str(tmp_path)
    assert observer.recursive is True
    assert observer.started is True

    observer.handler.dispatch(DirCreatedEvent(str(tmp_path / "b")))
    second = await asyncio.wait_for(anext(stream), 5)
    assert [(e.path, e.event_type) for e in second.events] == [
        (str(tmp_path / "b"), CgroupEventType.NEW)
    ]

    observer.handler.dispatch(DirDeletedEvent(str(tmp_path / "a") + "/"))
    third = await asyncio.wait_for(anext(stream), 5)
    assert [(e.path, e.event_type) for e in third.events] == [
        (str(tmp_path / "a"), CgroupEventType.DELETE)
    ]

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert observer.stopped and observer.joined
    assert [batch async for batch in stream] == []


@pytest.mark.asyncio
async def test_full_buffer_drops_notifications(tmp_path):
    observer = FakeObserver()
    mon = CGroupFSMonitor(
        str(tmp_path), environ={BUFFER_SIZE_ENV: "1"}, observer_factory=lambda: observer
    )
    stream = mon.events()
    task = asyncio.create_task(mon.run_cgroup_monitor())

    first = await asyncio.wait_for(anext(stream), 5)
    assert first.events == []

    observer.handler.dispatch(DirCreatedEvent(str(tmp_path / "one")))
    observer.handler.dispatch(DirCreatedEvent(str(tmp_path / "two")))
    second = await asyncio.wait_for(anext(stream), 5)
    assert [e.path for e in second.events] == [str(tmp_path / "one")]

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(anext(stream), 0.2)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task