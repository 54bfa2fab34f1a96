"""
Tests for Attempt Tracker
"""

from datetime import datetime, timezone

import pytest

from execution.statement import Mutation, MutationOp, Statement
from execution.tracker import AttemptState, AttemptTracker


class TestAttemptTracker:
    """Test attempt lifecycle"""

    def test_new_attempt(self):
        tracker = AttemptTracker()
        attempt = tracker.new_attempt()

        assert attempt.index == 0
        assert attempt.state == AttemptState.ACTIVE
        assert tracker.current is attempt
        assert tracker.count == 1

    def test_previous_attempt_must_end(self):
        tracker = AttemptTracker()
        tracker.new_attempt()

        with pytest.raises(ValueError, match="still active"):
            tracker.new_attempt()

    def test_discard_clears_attempt(self):
        tracker = AttemptTracker()
        attempt = tracker.new_attempt()
        attempt.transaction_id = b"tx1"
        attempt.buffer([Mutation.insert("T", ["a"], [1])])

        attempt.discard(RuntimeError("aborted"))

        assert attempt.state == AttemptState.ABORTED
        assert attempt.mutations == []
        assert attempt.transaction_id is None
        assert attempt.error_message == "aborted"
        assert tracker.new_attempt().index == 1

    def test_buffer_after_end_fails(self):
        attempt = AttemptTracker().new_attempt()
        attempt.fail(RuntimeError("boom"))

        with pytest.raises(ValueError):
            attempt.buffer([Mutation.delete("T", [[1]])])

    def test_commit_and_history(self):
        tracker = AttemptTracker()
        tracker.new_attempt().discard()
        committed = tracker.new_attempt()
        timestamp = datetime(2024, 1, 1, tzinfo=timezone.utc)

        committed.commit(timestamp)

        history = tracker.history()
        assert [entry["state"] for entry in history] == ["ABORTED", "COMMITTED"]
        assert history[1]["commit_timestamp"] == timestamp.isoformat()


class TestStatementsAndMutations:
    """Test statement and mutation records"""

    def test_statement_to_dict(self):
        assert Statement("SELECT 1").to_dict() == {"sql": "SELECT 1"}
        assert Statement("SELECT @id", {"id": "1"}).to_dict() == {"sql": "SELECT @id", "params": {"id": "1"}}

    @pytest.mark.parametrize("factory,op", [
        (Mutation.insert, MutationOp.INSERT),
        (Mutation.update, MutationOp.UPDATE),
        (Mutation.insert_or_update, MutationOp.INSERT_OR_UPDATE),
        (Mutation.replace, MutationOp.REPLACE),
    ])
    def test_write_mutations(self, factory, op):
        mutation = factory("Accounts", ["AccountId", "Balance"], [1, 50])

        assert mutation.op == op
        assert mutation.to_dict() == {
            op.value: {"table": "Accounts", "columns": ["AccountId", "Balance"], "values": [[1, 50]]}
        }

    def test_delete_mutation(self):
        mutation = Mutation.delete("Accounts", [[1], [2]])

        assert mutation.to_dict() == {"delete": {"table": "Accounts", "keySet": {"keys": [[1], [2]]}}}
