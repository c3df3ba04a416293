import subprocess
from unittest import mock

import pytest

from cgtproxy.connector import Connector, LastingConnector, NftConn, NftError, list_ruleset


def _done(args, returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args, returncode, stdout=stdout, stderr=stderr)


@mock.patch("cgtproxy.connector.subprocess.run")
def test_flush_sends_batch_to_nft(run):
    run.side_effect = lambda args, **kw: _done(args)
    conn = NftConn()
    conn.add("add table inet cgtproxy")
    conn.add("delete table inet cgtproxy")
    conn.flush()
    assert run.call_count == 1
    args, kwargs = run.call_args
    assert args[0] == ["nft", "-f", "-"]
    assert kwargs["input"] == "add table inet cgtproxy\ndelete table inet cgtproxy\n"
    assert conn.pending == ()


@mock.patch("cgtproxy.connector.subprocess.run")
def test_flush_of_empty_queue_runs_nothing(run):
    conn = NftConn()
    conn.flush()
    assert run.call_count == 0
    assert conn.pending == ()
    assert conn.closed is False


@mock.patch("cgtproxy.connector.subprocess.run")
def test_failed_flush_raises_and_empties_queue(run):
    run.side_effect = lambda args, **kw: _done(
        args, 1, stderr="Error: No such file or directory"
    )
    conn = NftConn()
    conn.add("delete table inet cgtproxy")
    with pytest.raises(NftError) as info:
        conn.flush()
    assert info.value.not_found
    assert info.value.returncode == 1
    assert conn.pending == ()


@mock.patch("cgtproxy.connector.subprocess.run")
def test_missing_binary_raises_nft_error(run):
    run.side_effect = FileNotFoundError("nft")
    conn = NftConn()
    conn.add("add table inet cgtproxy")
    with pytest.raises(NftError) as info:
        conn.flush()
    assert not info.value.not_found


def test_closed_connection_refuses_statements():
    conn = NftConn()
    conn.add("add table inet cgtproxy")
    conn.close()
    assert conn.closed
    assert conn.pending == ()
    with pytest.raises(NftError):
        conn.add("add table inet cgtproxy")


def test_empty_statement_rejected():
    with pytest.raises(ValueError):
        NftConn().add("   ")


def test_connector_gives_new_connection_each_time():
    connector = Connector()
    first = connector.connect()
    second = connector.connect()
    assert first is not second
    connector.release()
    assert not first.closed


def test_lasting_connector_reuses_connection_until_release():
    connector = LastingConnector()
    first = connector.connect()
    assert connector.connect() is first
    connector.release()
    assert first.closed
    assert connector.connect() is not first


def test_lasting_release_without_connection_is_harmless():
    connector = LastingConnector()
    connector.release()
    assert connector.connect().closed is False


@mock.patch("cgtproxy.connector.subprocess.run")
def test_list_ruleset_returns_stdout(run):
    run.side_effect = lambda args, **kw: _done(args, stdout="table inet cgtproxy {\n}\n")
    assert list_ruleset() == "table inet cgtproxy {\n}\n"
    assert run.call_args[0][0] == ["nft", "list", "ruleset"]


@mock.patch("cgtproxy.connector.subprocess.run")
def test_list_ruleset_failure_raises(run):
    run.side_effect = lambda args, **kw: _done(args, 1, stderr="Operation not permitted")
    with pytest.raises(NftError) as info:
        list_ruleset()
    assert "Operation not permitted" in str(info.value)