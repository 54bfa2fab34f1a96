"""
Tests for Read-Only and Read/Write Transactions
"""

import threading
import time
from unittest.mock import Mock

import grpc
import pytest

from execution.context import Context
from execution.errors import StatusError
from execution.statement import Mutation, Statement
from execution.tracker import AttemptTracker
from execution.transaction import BEGIN_READ_WRITE, SINGLE_USE_READ_ONLY, ReadOnlyTransaction, ReadWriteTransaction
from infrastructure.session_pool import SessionPool
from mock_spanner import (
    ALBUM_ROWS,
    BEGIN_TRANSACTION,
    DATABASE,
    EXECUTE_STREAMING_SQL,
    SELECT_ALBUMS,
    UPDATE_BAR,
    UPDATE_BAR_ROW_COUNT,
    unavailable,
)


@pytest.fixture
def pool(server):
    return SessionPool(server, DATABASE, logger=Mock())


def read_write(server, pool, fast_backoff, inline_begin=True, ctx=None):
    ctx = ctx or Context.background()
    attempt = AttemptTracker().new_attempt()
    session = pool.acquire(ctx)
    return ReadWriteTransaction(
        ctx,
        session,
        server,
        attempt,
        backoff=fast_backoff,
        inline_begin=inline_begin,
        logger=Mock()
    )


class TestReadOnlyTransaction:
    """Test ReadOnlyTransaction"""

    def test_single_use_query(self, server, pool, fast_backoff):
        tx = ReadOnlyTransaction(pool, server, single_use=True, backoff=fast_backoff)

        with tx.query(SELECT_ALBUMS) as rows:
            assert list(rows) == ALBUM_ROWS

        request = server.requests_for(EXECUTE_STREAMING_SQL)[0]
        assert request["transaction"] == SINGLE_USE_READ_ONLY
        assert server.count(BEGIN_TRANSACTION) == 0
        assert pool.in_use_count == 0

    def test_single_use_runs_one_query(self, server, pool):
        tx = ReadOnlyTransaction(pool, server, single_use=True)
        list(tx.query(SELECT_ALBUMS))

        with pytest.raises(ValueError):
            tx.query(SELECT_ALBUMS)

    def test_multi_use_begins_once(self, server, pool, fast_backoff):
        with ReadOnlyTransaction(pool, server, single_use=False, backoff=fast_backoff) as tx:
            assert list(tx.query(SELECT_ALBUMS)) == ALBUM_ROWS
            assert list(tx.query(Statement(SELECT_ALBUMS))) == ALBUM_ROWS
            assert pool.in_use_count == 1

        assert server.count(BEGIN_TRANSACTION) == 1
        ids = {r["transaction"]["id"] for r in server.requests_for(EXECUTE_STREAMING_SQL)}
        assert len(ids) == 1
        assert pool.in_use_count == 0

    def test_begin_retried_on_unavailable(self, server, pool, fast_backoff):
        server.put_errors(BEGIN_TRANSACTION, unavailable(), unavailable())

        with ReadOnlyTransaction(pool, server, single_use=False, backoff=fast_backoff) as tx:
            assert list(tx.query(SELECT_ALBUMS)) == ALBUM_ROWS

        assert server.count(BEGIN_TRANSACTION) == 3

    def test_close_unused_is_noop(self, server, pool):
        tx = ReadOnlyTransaction(pool, server, single_use=False)
        tx.close()

        assert server.requests == []

    def test_query_after_close_fails(self, server, pool):
        tx = ReadOnlyTransaction(pool, server, single_use=False)
        tx.close()

        with pytest.raises(ValueError):
            tx.query(SELECT_ALBUMS)

    def test_rejects_non_statement(self, server, pool):
        with pytest.raises(TypeError):
            ReadOnlyTransaction(pool, server).query(42)

    def test_single_use_discards_lost_session(self, server, pool, fast_backoff):
        list(ReadOnlyTransaction(pool, server, backoff=fast_backoff).query(SELECT_ALBUMS))
        server.forget_sessions()

        with pytest.raises(StatusError) as exc_info:
            list(ReadOnlyTransaction(pool, server, backoff=fast_backoff).query(SELECT_ALBUMS))

        assert exc_info.value.code == grpc.StatusCode.NOT_FOUND
        assert pool.idle_count == 0
        assert pool.in_use_count == 0
        assert list(ReadOnlyTransaction(pool, server, backoff=fast_backoff).query(SELECT_ALBUMS)) == ALBUM_ROWS

    def test_multi_use_discards_lost_session_on_close(self, server, pool, fast_backoff):
        with ReadOnlyTransaction(pool, server, single_use=False, backoff=fast_backoff) as tx:
            assert list(tx.query(SELECT_ALBUMS)) == ALBUM_ROWS
            server.forget_sessions()
            with pytest.raises(StatusError):
                list(tx.query(SELECT_ALBUMS))

        assert pool.idle_count == 0
        assert pool.in_use_count == 0

    def test_close_not_blocked_by_begin(self, server, pool, fast_backoff):
        server.delays[BEGIN_TRANSACTION] = 0.5
        tx = ReadOnlyTransaction(pool, server, single_use=False, backoff=fast_backoff)
        rows = tx.query(SELECT_ALBUMS)
        worker = threading.Thread(target=lambda: list(rows))
        worker.start()
        for _ in range(200):
            if server.count(BEGIN_TRANSACTION):
                break
            time.sleep(0.005)

        started = time.monotonic()
        tx.close()
        elapsed = time.monotonic() - started
        worker.join(5)

        assert elapsed < 0.25
        assert pool.in_use_count == 0


class TestReadWriteTransaction:
    """Test ReadWriteTransaction"""

    def test_first_statement_begins_inline(self, server, pool, fast_backoff):
        tx = read_write(server, pool, fast_backoff)

        assert list(tx.query(SELECT_ALBUMS)) == ALBUM_ROWS
        list(tx.query(SELECT_ALBUMS))

        requests = server.requests_for(EXECUTE_STREAMING_SQL)
        assert requests[0]["transaction"] == BEGIN_READ_WRITE
        assert requests[1]["transaction"] == {"id": tx.transaction_id}
        assert server.count(BEGIN_TRANSACTION) == 0

    def test_explicit_begin(self, server, pool, fast_backoff):
        tx = read_write(server, pool, fast_backoff, inline_begin=False)

        list(tx.query(SELECT_ALBUMS))

        assert server.count(BEGIN_TRANSACTION) == 1
        assert server.requests_for(EXECUTE_STREAMING_SQL)[0]["transaction"] == {"id": tx.transaction_id}

    def test_update_returns_row_count(self, server, pool, fast_backoff):
        tx = read_write(server, pool, fast_backoff)

        assert tx.update(UPDATE_BAR) == UPDATE_BAR_ROW_COUNT
        assert tx.update(UPDATE_BAR) == UPDATE_BAR_ROW_COUNT

        seqnos = [r["seqno"] for r in server.requests_for(EXECUTE_STREAMING_SQL)]
        assert seqnos == [1, 2]

    def test_commit_without_statements_begins_explicitly(self, server, pool, fast_backoff):
        tx = read_write(server, pool, fast_backoff)
        mutation = Mutation.insert("Accounts", ["AccountId"], [1])
        tx.buffer_write([mutation])

        tx.commit()

        assert server.count(BEGIN_TRANSACTION) == 1
        assert server.commits[0]["mutations"] == [mutation]

    def test_inline_begin_restarted_after_transient_error(self, server, pool, fast_backoff):
        server.put_errors(EXECUTE_STREAMING_SQL, unavailable())
        tx = read_write(server, pool, fast_backoff)

        assert list(tx.query(SELECT_ALBUMS)) == ALBUM_ROWS

        requests = server.requests_for(EXECUTE_STREAMING_SQL)
        assert [r["transaction"] for r in requests] == [BEGIN_READ_WRITE, BEGIN_READ_WRITE]
        assert tx.transaction_id is not None

    def test_concurrent_statement_waits_for_inline_begin(self, server, pool, fast_backoff):
        tx = read_write(server, pool, fast_backoff)
        first = tx.query(SELECT_ALBUMS)
        first.start()

        rows = []
        worker = threading.Thread(target=lambda: rows.extend(tx.query(SELECT_ALBUMS)))
        worker.start()
        worker.join(0.05)
        assert worker.is_alive()

        assert first.next() == ALBUM_ROWS[0]
        worker.join(5)

        assert rows == ALBUM_ROWS
        second = server.requests_for(EXECUTE_STREAMING_SQL)[1]
        assert second["transaction"] == {"id": tx.transaction_id}
        first.stop()

    def test_failed_inline_begin_releases_waiters(self, server, pool, fast_backoff):
        server.put_errors(EXECUTE_STREAMING_SQL, StatusError("bad", code=grpc.StatusCode.INVALID_ARGUMENT))
        tx = read_write(server, pool, fast_backoff)

        with pytest.raises(StatusError):
            list(tx.query(SELECT_ALBUMS))

        assert list(tx.query(SELECT_ALBUMS)) == ALBUM_ROWS
        requests = server.requests_for(EXECUTE_STREAMING_SQL)
        assert requests[1]["transaction"] == BEGIN_READ_WRITE

    def test_rollback_failure_is_logged(self, server, pool, fast_backoff):
        tx = read_write(server, pool, fast_backoff)
        list(tx.query(SELECT_ALBUMS))
        server.put_errors("rollback", unavailable())

        tx.rollback()

        tx._logger.warning.assert_called_once()

    def test_statement_after_attempt_ended_fails(self, server, pool, fast_backoff):
        tx = read_write(server, pool, fast_backoff)
        tx.attempt.discard()

        with pytest.raises(ValueError):
            tx.query(SELECT_ALBUMS)
