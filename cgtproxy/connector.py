"""Connections that apply batches of statements to the nft ruleset."""

from __future__ import annotations

import subprocess
import weakref
from collections.abc import Sequence

NFT_BINARY = "nft"
_ENOENT_TEXT = "No such file or directory"


class NftError(Exception):
    """Running nft failed or a closed connection was used."""

    def __init__(self, message: str, stderr: str = "", returncode: int | None = None):
        detail = stderr.strip()
        super().__init__(f"{message}: {detail}" if detail else message)
        self.stderr = stderr
        self.returncode = returncode

    @property
    def not_found(self) -> bool:
        """Whether nft reported that the object does not exist."""
        return _ENOENT_TEXT in self.stderr


def _run(args: Sequence[str], script: str | None = None) -> str:
    try:
        result = subprocess.run(
            list(args), input=script, capture_output=True, text=True, check=False
        )
    except OSError as exc:
        raise NftError(f"cannot run {args[0]}: {exc}") from exc
    if result.returncode != 0:
        raise NftError(f"{' '.join(args)} failed", result.stderr or "", result.returncode)
    return result.stdout


def list_ruleset() -> str:
    """Return the output of ``nft list ruleset``."""
    return _run([NFT_BINARY, "list", "ruleset"])


class NftConn:
    """Queues nft statements and applies them as one atomic batch."""

    def __init__(self, nft: str = NFT_BINARY):
        self._nft = nft
        self._pending: list[str] = []
        self._closed = False

    @property
    def pending(self) -> tuple[str, ...]:
        """Statements queued since the last flush."""
        return tuple(self._pending)

    @property
    def closed(self) -> bool:
        return self._closed

    def add(self, statement: str) -> None:
        """Queue one statement."""
        if self._closed:
            raise NftError("connection is closed")
        if not statement.strip():
            raise ValueError("empty nft statement")
        self._pending.append(statement)

    def flush(self) -> None:
        """Apply the queued statements; the queue is emptied either way."""
        if self._closed:
            raise NftError("connection is closed")
        batch, self._pending = self._pending, []
        if not batch:
            return
        _run([self._nft, "-f", "-"], "\n".join(batch) + "\n")

    def close(self) -> None:
        """Drop queued statements and refuse further use."""
        self._pending = []
        self._closed = True

    def __enter__(self) -> NftConn:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class Connector:
    """Hands out a fresh connection for every request."""

    def __init__(self, nft: str = NFT_BINARY):
        self._nft = nft
        self._issued: weakref.WeakSet[NftConn] = weakref.WeakSet()

    def connect(self) -> NftConn:
        conn = NftConn(self._nft)
        self._issued.add(conn)
        return conn

    def release(self) -> None:
        """Close every connection handed out that is still alive."""
        for conn in list(self._issued):
            conn.close()
        self._issued.clear()


class LastingConnector:
    """Hands out the same connection until it is released."""

    def __init__(self, nft: str = NFT_BINARY):
        self._nft = nft
        self._conn: NftConn | None = None

    def connect(self) -> NftConn:
        if self._conn is None or self._conn.closed:
            self._conn = NftConn(self._nft)
        return self._conn

    def release(self) -> None:
        if self._conn is not None:
            self._conn.close()
        self._conn = None