"""Value types shared between the cgroup monitor, route manager and nft manager."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import IntEnum


class CgroupEventType(IntEnum):
    """Kind of change observed in the cgroup file system."""

    NEW = 0
    DELETE = 1

    def __str__(self) -> str:
        return self.name.capitalize()


@dataclass
class CGroupEvent:
    """A single cgroup appearing or disappearing."""

    path: str
    event_type: CgroupEventType = CgroupEventType.NEW


@dataclass
class CGroupEvents:
    """A batch of cgroup events.

    When ``result`` is set, the consumer completes it with the error raised
    while handling the batch, or with ``None`` on success.
    """

    events: list[CGroupEvent] = field(default_factory=list)
    result: asyncio.Future[BaseException | None] | None = None


class TargetOp(IntEnum):
    """What to do with traffic coming from a cgroup."""

    NOOP = 0
    DROP = 1
    TPROXY = 2
    DIRECT = 3

    def __str__(self) -> str:
        return self.name.lower()


@dataclass(frozen=True)
class Target:
    """Operation applied to a cgroup, with the chain to jump to for TPROXY."""

    op: TargetOp = TargetOp.NOOP
    chain: str = ""


@dataclass
class Route:
    """Binding of a cgroup path to a target."""

    path: str
    target: Target = field(default_factory=Target)