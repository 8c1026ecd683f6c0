"""
Tests for transaction.py - batching, reconciliation and atomic commit.
"""

import pytest
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy.exc import IntegrityError

from jobstore.commands import NewState
from jobstore.database import (
    Counter,
    Hash,
    Job,
    JobState,
    ListItem,
    QueuedJob,
    SetItem,
    State,
    utc_now,
)
from jobstore.errors import (
    CommitError,
    PreconditionError,
    StaleEntryError,
    TransactionDisposedError,
)
from jobstore.logger import get_logger
from jobstore.queues import ExternalJobQueue, SqlJobQueue, TransactionalJobQueue
from jobstore.transaction import JobStorageTransaction


class RecordingQueue(ExternalJobQueue):
    """External provider remembering every enqueue."""

    def __init__(self):
        self.calls = []

    def enqueue_externally(self, queue, job_id):
        self.calls.append((queue, job_id))


class CountingQueue(SqlJobQueue):
    """Store-backed provider counting wake-up signals."""

    def __init__(self):
        super().__init__()
        self.notifications = 0

    def notify_new_item(self):
        self.notifications += 1
        super().notify_new_item()


class BrokenQueue(TransactionalJobQueue):
    """Store-backed provider whose staging step fails."""

    def __init__(self):
        self.notified = False

    def enqueue_within_transaction(self, uow, queue, job_id):
        raise KeyError(queue)

    def notify_new_item(self):
        self.notified = True


def _commit(storage, build):
    transaction = storage.create_transaction()
    build(transaction)
    transaction.commit()


class TestPreconditions:
    """Invalid arguments are rejected before anything is queued."""

    @pytest.mark.parametrize("key", [None, "", 5])
    def test_invalid_key_rejected(self, storage, key):
        tx = storage.create_transaction()
        with pytest.raises(PreconditionError):
            tx.increment_counter(key)
        assert len(tx) == 0

    @pytest.mark.parametrize("job_id", [None, "", "abc", "0", "-4", "1.5", " 7"])
    def test_malformed_job_id_rejected(self, storage, job_id):
        tx = storage.create_transaction()
        with pytest.raises(PreconditionError):
            tx.add_job_state(job_id, NewState("Enqueued"))
        with pytest.raises(PreconditionError):
            tx.add_to_queue("default", job_id)
        assert len(tx) == 0

    def test_empty_queue_rejected(self, storage):
        tx = storage.create_transaction()
        with pytest.raises(PreconditionError):
            tx.add_to_queue("", "1")
        assert len(tx) == 0

    def test_missing_state_rejected(self, storage):
        tx = storage.create_transaction()
        with pytest.raises(PreconditionError):
            tx.set_job_state("1", None)
        with pytest.raises(PreconditionError):
            tx.set_job_state("1", NewState(""))

    def test_set_value_required(self, storage):
        tx = storage.create_transaction()
        with pytest.raises(PreconditionError):
            tx.add_to_set("key", None)
        with pytest.raises(PreconditionError):
            tx.remove_from_set("key", "")
        with pytest.raises(PreconditionError):
            tx.add_range_to_set("key", ["a", None])
        with pytest.raises(PreconditionError):
            tx.add_range_to_set("key", "abc")

    def test_state_must_be_new_state(self, storage):
        tx = storage.create_transaction()
        with pytest.raises(PreconditionError, match="NewState"):
            tx.add_job_state("1", "Enqueued")
        with pytest.raises(PreconditionError):
            tx.set_job_state("1", NewState("Enqueued", data={"queue": "default"}))
        assert len(tx) == 0

    def test_job_id_beyond_bigint_rejected(self, storage):
        tx = storage.create_transaction()
        with pytest.raises(PreconditionError):
            tx.add_job_state("9223372036854775808", NewState("Enqueued"))
        assert len(tx) == 0

    @pytest.mark.parametrize("score", [float("nan"), float("inf"), float("-inf"), Decimal("NaN")])
    def test_non_finite_score_rejected(self, storage, score):
        tx = storage.create_transaction()
        with pytest.raises(PreconditionError, match="finite"):
            tx.add_to_set("key", "value", score)
        assert len(tx) == 0

    @pytest.mark.parametrize("pairs", [
        ["ab"],
        [("a", "1", "extra")],
        [("a",)],
        [None],
    ])
    def test_malformed_hash_pairs_rejected(self, storage, pairs):
        tx = storage.create_transaction()
        with pytest.raises(PreconditionError, match="pairs"):
            tx.set_range_in_hash("h", pairs)
        assert len(tx) == 0

    def test_expire_requires_timedelta(self, storage):
        tx = storage.create_transaction()
        with pytest.raises(PreconditionError):
            tx.expire_hash("key", 60)
        with pytest.raises(PreconditionError):
            tx.expire_job("1", None)

    def test_trim_bounds_must_be_integers(self, storage):
        tx = storage.create_transaction()
        with pytest.raises(PreconditionError):
            tx.trim_list("key", "1", 2)

    def test_rejected_call_keeps_earlier_actions(self, storage, fetch):
        tx = storage.create_transaction()
        tx.increment_counter("kept")
        with pytest.raises(PreconditionError):
            tx.increment_counter("")
        tx.commit()

        assert [c.key for c in fetch(Counter)] == ["kept"]

    def test_storage_required(self):
        with pytest.raises(PreconditionError):
            JobStorageTransaction(None)


class TestLifecycle:
    """Disposal and single-use semantics."""

    def test_use_after_dispose_fails(self, storage, fetch):
        tx = storage.create_transaction()
        tx.dispose()

        with pytest.raises(TransactionDisposedError):
            tx.increment_counter("c")
        with pytest.raises(TransactionDisposedError):
            tx.commit()
        assert fetch(Counter) == []

    def test_use_after_commit_fails(self, storage, fetch):
        tx = storage.create_transaction()
        tx.increment_counter("c")
        tx.commit()

        with pytest.raises(TransactionDisposedError):
            tx.increment_counter("c")
        with pytest.raises(TransactionDisposedError):
            tx.commit()
        assert fetch(Counter)[0].value == 1

    def test_dispose_is_idempotent(self, storage):
        tx = storage.create_transaction()
        tx.insert_to_list("k", "a")
        tx.dispose()
        tx.dispose()
        assert len(tx) == 0

    def test_disposed_actions_never_reach_store(self, storage, fetch):
        with storage.create_transaction() as tx:
            tx.insert_to_list("k", "a")
            tx.add_to_set("s", "v")

        assert fetch(ListItem) == []
        assert fetch(SetItem) == []

    def test_precondition_checked_before_disposal(self, storage):
        tx = storage.create_transaction()
        tx.dispose()
        with pytest.raises(PreconditionError):
            tx.increment_counter("")

    def test_empty_commit_succeeds(self, storage):
        tx = storage.create_transaction()
        tx.commit()
        assert get_logger().get_metrics()["commits"] == 1


class TestCounters:
    """Counter aggregation."""

    def test_increments_collapse_into_one_row(self, storage, fetch):
        def build(tx):
            tx.increment_counter("c")
            tx.increment_counter("c")
            tx.increment_counter("c")
            tx.decrement_counter("c")

        _commit(storage, build)

        rows = fetch(Counter, key="c")
        assert len(rows) == 1
        assert rows[0].value == 2

    def test_last_expiry_wins(self, storage, fetch):
        def build(tx):
            tx.increment_counter("c", timedelta(hours=1))
            tx.increment_counter("c", timedelta(days=1))
            tx.increment_counter("c")

        _commit(storage, build)

        rows = fetch(Counter, key="c")
        assert rows[0].value == 3
        assert rows[0].expire_at is None

    def test_expiry_is_relative_to_call_time(self, storage, fetch):
        before = utc_now()
        _commit(storage, lambda tx: tx.decrement_counter("c", timedelta(minutes=5)))
        after = utc_now()

        row = fetch(Counter, key="c")[0]
        assert row.value == -1
        assert before + timedelta(minutes=5) <= row.expire_at <= after + timedelta(minutes=5)

    def test_counters_accumulate_across_transactions(self, storage, fetch):
        _commit(storage, lambda tx: tx.increment_counter("c"))
        _commit(storage, lambda tx: (tx.increment_counter("c"), tx.increment_counter("c")))
        _commit(storage, lambda tx: tx.decrement_counter("c"))

        rows = fetch(Counter, key="c")
        assert len(rows) == 1
        assert rows[0].value == 2

    def test_keys_are_independent(self, storage, fetch):
        _commit(storage, lambda tx: (tx.increment_counter("a"), tx.decrement_counter("b")))

        values = {row.key: row.value for row in fetch(Counter)}
        assert values == {"a": 1, "b": -1}


class TestSets:
    """Scored set operations."""

    def test_same_value_twice_yields_one_row(self, storage, fetch):
        _commit(storage, lambda tx: (tx.add_to_set("s", "v"), tx.add_to_set("s", "v", 3)))

        rows = fetch(SetItem, key="s")
        assert len(rows) == 1
        assert rows[0].score == Decimal(3)

    def test_score_defaults_to_zero(self, storage, fetch):
        _commit(storage, lambda tx: tx.add_to_set("s", "v"))
        assert fetch(SetItem, key="s")[0].score == Decimal(0)

    def test_range_add_collapses_duplicates(self, storage, fetch):
        _commit(storage, lambda tx: tx.add_range_to_set("s", ["a", "b", "a", "c", "b"]))

        assert [row.value for row in fetch(SetItem, key="s")] == ["a", "b", "c"]

    def test_range_add_after_single_add(self, storage, fetch):
        def build(tx):
            tx.add_to_set("s", "a", 5)
            tx.add_range_to_set("s", ["a", "b"])

        _commit(storage, build)

        rows = {row.value: row.score for row in fetch(SetItem, key="s")}
        assert rows == {"a": Decimal(5), "b": Decimal(0)}

    def test_range_add_keeps_persisted_score(self, storage, seed, fetch):
        seed(SetItem(key="s", value="a", score=Decimal(7), created_at=datetime(2024, 1, 1)))

        _commit(storage, lambda tx: tx.add_range_to_set("s", ["a", "b"]))

        rows = {row.value: row.score for row in fetch(SetItem, key="s")}
        assert rows == {"a": Decimal(7), "b": Decimal(0)}

    def test_add_existing_updates_score_and_created_at(self, storage, seed, fetch):
        expire_at = datetime(2030, 1, 1)
        seed(SetItem(key="s", value="v", score=Decimal(1),
                     created_at=datetime(2024, 1, 1), expire_at=expire_at))

        _commit(storage, lambda tx: tx.add_to_set("s", "v", 2.5))

        row = fetch(SetItem, key="s")[0]
        assert row.score == Decimal("2.5")
        assert row.created_at > datetime(2024, 1, 1)
        assert row.expire_at == expire_at

    def test_remove_persisted_value(self, storage, seed, fetch):
        seed(
            SetItem(key="s", value="a", created_at=datetime(2024, 1, 1)),
            SetItem(key="s", value="b", created_at=datetime(2024, 1, 1)),
        )

        _commit(storage, lambda tx: tx.remove_from_set("s", "a"))

        assert [row.value for row in fetch(SetItem, key="s")] == ["b"]

    def test_remove_staged_value_cancels_insert(self, storage, fetch):
        _commit(storage, lambda tx: (tx.add_to_set("s", "a"), tx.remove_from_set("s", "a")))

        assert fetch(SetItem, key="s") == []

    def test_remove_missing_value_is_noop(self, storage, fetch):
        _commit(storage, lambda tx: tx.remove_from_set("s", "ghost"))
        assert fetch(SetItem) == []

    def test_remove_then_add_keeps_one_row(self, storage, seed, fetch):
        seed(SetItem(key="s", value="a", score=Decimal(1), created_at=datetime(2024, 1, 1),
                     expire_at=datetime(2030, 1, 1)))

        _commit(storage, lambda tx: (tx.remove_from_set("s", "a"), tx.add_to_set("s", "a", 9)))

        rows = fetch(SetItem, key="s")
        assert len(rows) == 1
        assert rows[0].score == Decimal(9)
        assert rows[0].expire_at is None

    def test_remove_then_range_add_keeps_row(self, storage, seed, fetch):
        seed(SetItem(key="s", value="a", score=Decimal(4), created_at=datetime(2024, 1, 1)))

        _commit(storage, lambda tx: (tx.remove_from_set("s", "a"), tx.add_range_to_set("s", ["a"])))

        rows = fetch(SetItem, key="s")
        assert len(rows) == 1
        assert rows[0].score == Decimal(4)

    def test_remove_set_covers_persisted_and_staged(self, storage, seed, fetch):
        seed(
            SetItem(key="s", value="a", created_at=datetime(2024, 1, 1)),
            SetItem(key="other", value="a", created_at=datetime(2024, 1, 1)),
        )

        _commit(storage, lambda tx: (tx.add_to_set("s", "b"), tx.remove_set("s")))

        assert fetch(SetItem, key="s") == []
        assert len(fetch(SetItem, key="other")) == 1

    def test_expire_and_persist_set(self, storage, seed, fetch):
        seed(SetItem(key="s", value="a", score=Decimal(2), created_at=datetime(2024, 1, 1)))

        _commit(storage, lambda tx: (tx.add_to_set("s", "b"), tx.expire_set("s", timedelta(days=1))))

        rows = fetch(SetItem, key="s")
        assert all(row.expire_at is not None for row in rows)
        assert rows[0].score == Decimal(2)

        _commit(storage, lambda tx: tx.persist_set("s"))
        assert all(row.expire_at is None for row in fetch(SetItem, key="s"))


class TestLists:
    """Dense list positions."""

    def test_insert_appends_from_zero(self, storage, fetch):
        _commit(storage, lambda tx: (tx.insert_to_list("k", "a"), tx.insert_to_list("k", "b")))

        rows = fetch(ListItem, key="k")
        assert [(row.position, row.value) for row in rows] == [(0, "a"), (1, "b")]

    def test_insert_continues_after_persisted(self, storage, seed, fetch):
        seed(ListItem(key="k", position=0, value="a"), ListItem(key="k", position=1, value="b"))

        _commit(storage, lambda tx: tx.insert_to_list("k", "c"))

        assert [row.position for row in fetch(ListItem, key="k")] == [0, 1, 2]

    def test_remove_staged_value_keeps_positions_dense(self, storage, fetch):
        def build(tx):
            tx.insert_to_list("k", "a")
            tx.insert_to_list("k", "b")
            tx.remove_from_list("k", "a")

        _commit(storage, build)

        rows = fetch(ListItem, key="k")
        assert [(row.position, row.value) for row in rows] == [(0, "b")]

    def test_remove_persisted_values(self, storage, seed, fetch):
        seed(*[
            ListItem(key="k", position=i, value=v)
            for i, v in enumerate(["x", "a", "x", "b", "x"])
        ])

        _commit(storage, lambda tx: tx.remove_from_list("k", "x"))

        rows = fetch(ListItem, key="k")
        assert [(row.position, row.value) for row in rows] == [(0, "a"), (1, "b")]

    def test_trim_keeps_inclusive_range(self, storage, seed, fetch):
        seed(*[ListItem(key="k", position=i, value=f"v{i}") for i in range(5)])

        _commit(storage, lambda tx: tx.trim_list("k", 1, 2))

        rows = fetch(ListItem, key="k")
        assert [(row.position, row.value) for row in rows] == [(0, "v1"), (1, "v2")]

    def test_trim_moves_expiry_with_value(self, storage, seed, fetch):
        expire_at = datetime(2030, 1, 1)
        seed(
            ListItem(key="k", position=0, value="a"),
            ListItem(key="k", position=1, value="b", expire_at=expire_at),
        )

        _commit(storage, lambda tx: tx.trim_list("k", 1, 1))

        rows = fetch(ListItem, key="k")
        assert [(row.position, row.value, row.expire_at) for row in rows] == [(0, "b", expire_at)]

    def test_trim_outside_range_empties_list(self, storage, seed, fetch):
        seed(*[ListItem(key="k", position=i, value=f"v{i}") for i in range(3)])

        _commit(storage, lambda tx: tx.trim_list("k", 5, 10))

        assert fetch(ListItem, key="k") == []

    def test_insert_after_trim_stays_dense(self, storage, seed, fetch):
        seed(*[ListItem(key="k", position=i, value=f"v{i}") for i in range(5)])

        _commit(storage, lambda tx: (tx.trim_list("k", 0, 1), tx.insert_to_list("k", "new")))

        rows = fetch(ListItem, key="k")
        assert [(row.position, row.value) for row in rows] == [(0, "v0"), (1, "v1"), (2, "new")]

    def test_trim_sees_staged_inserts(self, storage, seed, fetch):
        seed(ListItem(key="k", position=0, value="old"))

        def build(tx):
            tx.insert_to_list("k", "a")
            tx.insert_to_list("k", "b")
            tx.trim_list("k", 1, 2)

        _commit(storage, build)

        rows = fetch(ListItem, key="k")
        assert [(row.position, row.value) for row in rows] == [(0, "a"), (1, "b")]

    def test_expire_and_persist_list(self, storage, seed, fetch):
        seed(ListItem(key="k", position=0, value="a"))

        _commit(storage, lambda tx: (tx.insert_to_list("k", "b"), tx.expire_list("k", timedelta(hours=2))))

        rows = fetch(ListItem, key="k")
        assert len(rows) == 2
        assert all(row.expire_at is not None for row in rows)
        assert [row.value for row in rows] == ["a", "b"]

        _commit(storage, lambda tx: tx.persist_list("k"))
        assert all(row.expire_at is None for row in fetch(ListItem, key="k"))

    def test_null_values_allowed(self, storage, fetch):
        _commit(storage, lambda tx: (tx.insert_to_list("k", None), tx.insert_to_list("k", "a")))
        _commit(storage, lambda tx: tx.remove_from_list("k", None))

        rows = fetch(ListItem, key="k")
        assert [(row.position, row.value) for row in rows] == [(0, "a")]


class TestHashes:
    """Hash field operations."""

    def test_set_range_inserts_and_updates(self, storage, seed, fetch):
        expire_at = datetime(2030, 1, 1)
        seed(Hash(key="h", field="a", value="old", expire_at=expire_at))

        _commit(storage, lambda tx: tx.set_range_in_hash("h", {"a": "new", "b": "2"}))

        rows = {row.field: (row.value, row.expire_at) for row in fetch(Hash, key="h")}
        assert rows == {"a": ("new", expire_at), "b": ("2", None)}

    def test_duplicate_field_last_value_wins(self, storage, fetch):
        def build(tx):
            tx.set_range_in_hash("h", [("a", "1"), ("a", "2")])
            tx.set_range_in_hash("h", {"a": "3"})

        _commit(storage, build)

        rows = fetch(Hash, key="h")
        assert [(row.field, row.value) for row in rows] == [("a", "3")]

    def test_remove_hash_covers_persisted_and_staged(self, storage, seed, fetch):
        seed(Hash(key="h", field="a", value="1"), Hash(key="g", field="a", value="1"))

        _commit(storage, lambda tx: (tx.set_range_in_hash("h", {"b": "2"}), tx.remove_hash("h")))

        assert fetch(Hash, key="h") == []
        assert len(fetch(Hash, key="g")) == 1

    def test_set_after_remove_recreates_field(self, storage, seed, fetch):
        seed(Hash(key="h", field="a", value="1", expire_at=datetime(2030, 1, 1)))

        _commit(storage, lambda tx: (tx.remove_hash("h"), tx.set_range_in_hash("h", {"a": "2"})))

        rows = fetch(Hash, key="h")
        assert [(row.field, row.value, row.expire_at) for row in rows] == [("a", "2", None)]

    def test_expire_and_persist_hash(self, storage, seed, fetch):
        seed(Hash(key="h", field="a", value="1"))

        _commit(storage, lambda tx: tx.expire_hash("h", timedelta(days=1)))
        rows = fetch(Hash, key="h")
        assert rows[0].expire_at is not None
        assert rows[0].value == "1"

        _commit(storage, lambda tx: tx.persist_hash("h"))
        assert fetch(Hash, key="h")[0].expire_at is None

    def test_empty_field_rejected(self, storage):
        tx = storage.create_transaction()
        with pytest.raises(PreconditionError):
            tx.set_range_in_hash("h", {"": "x"})
        assert len(tx) == 0


class TestJobState:
    """State history and current-state pointer."""

    def test_add_then_set_state(self, storage, jobs, fetch):
        def build(tx):
            tx.add_job_state("1", NewState("Enqueued", reason="Triggered", data='{"queue":"default"}'))
            tx.set_job_state("1", NewState("Processing"))

        _commit(storage, build)

        history = fetch(State, job_id=1)
        assert [state.name for state in history] == ["Enqueued", "Processing"]
        assert history[0].reason == "Triggered"
        assert history[0].data == '{"queue":"default"}'

        pointers = fetch(JobState)
        assert len(pointers) == 1
        assert pointers[0].job_id == 1
        assert pointers[0].name == "Processing"
        assert pointers[0].state_id == history[1].id

    def test_add_state_leaves_pointer_alone(self, storage, jobs, fetch):
        _commit(storage, lambda tx: tx.add_job_state("1", NewState("Scheduled")))

        assert len(fetch(State)) == 1
        assert fetch(JobState) == []

    def test_set_twice_in_one_batch(self, storage, jobs, fetch):
        _commit(storage, lambda tx: (
            tx.set_job_state("2", NewState("Enqueued")),
            tx.set_job_state("2", NewState("Processing")),
        ))

        history = fetch(State, job_id=2)
        pointers = fetch(JobState, job_id=2)
        assert len(history) == 2
        assert len(pointers) == 1
        assert pointers[0].state_id == history[-1].id

    def test_set_updates_persisted_pointer(self, storage, jobs, fetch):
        _commit(storage, lambda tx: tx.set_job_state("1", NewState("Enqueued")))
        _commit(storage, lambda tx: tx.set_job_state("1", NewState("Succeeded")))

        history = fetch(State, job_id=1)
        pointers = fetch(JobState, job_id=1)
        assert [state.name for state in history] == ["Enqueued", "Succeeded"]
        assert len(pointers) == 1
        assert pointers[0].name == "Succeeded"
        assert pointers[0].state_id == history[1].id

    def test_any_transition_accepted(self, storage, jobs, fetch):
        _commit(storage, lambda tx: (
            tx.set_job_state("1", NewState("Succeeded")),
            tx.set_job_state("1", NewState("Enqueued")),
        ))
        assert fetch(JobState, job_id=1)[0].name == "Enqueued"

    def test_expire_and_persist_job(self, storage, jobs, fetch):
        _commit(storage, lambda tx: tx.expire_job("3", timedelta(days=1)))

        job = fetch(Job, id=3)[0]
        assert job.expire_at is not None
        assert job.invocation_data == "{}"

        _commit(storage, lambda tx: tx.persist_job("3"))
        assert fetch(Job, id=3)[0].expire_at is None

    def test_expire_missing_job_fails_commit(self, storage, jobs):
        tx = storage.create_transaction()
        tx.expire_job("404", timedelta(days=1))

        with pytest.raises(StaleEntryError):
            tx.commit()


class TestQueues:
    """Queue dispatch through providers."""

    def test_store_backed_enqueue_commits_with_batch(self, storage, jobs, fetch):
        tx = storage.create_transaction()
        tx.add_to_queue("default", "1")

        assert fetch(QueuedJob) == []
        tx.commit()

        rows = fetch(QueuedJob)
        assert [(row.queue, row.job_id, row.fetched_at) for row in rows] == [("default", 1, None)]

    def test_store_backed_enqueue_signals_once_after_commit(self, storage, jobs):
        queue = CountingQueue()
        storage.set_job_queue("critical", queue)

        tx = storage.create_transaction()
        tx.add_to_queue("critical", "2")
        assert queue.notifications == 0

        tx.commit()
        assert queue.notifications == 1
        assert queue.wait_for_new_item(timeout=0)

    def test_failed_commit_skips_signal(self, storage, jobs, fetch):
        queue = CountingQueue()
        storage.set_job_queue("critical", queue)

        tx = storage.create_transaction()
        tx.add_to_queue("critical", "999")

        with pytest.raises(CommitError):
            tx.commit()
        assert queue.notifications == 0
        assert not queue.new_item_event.is_set()
        assert fetch(QueuedJob) == []

    def test_external_enqueue_happens_immediately(self, storage, jobs, fetch):
        external = RecordingQueue()
        storage.set_job_queue("broker", external)

        tx = storage.create_transaction()
        tx.add_to_queue("broker", "3")
        assert external.calls == [("broker", "3")]

        tx.dispose()
        assert external.calls == [("broker", "3")]
        assert fetch(QueuedJob) == []

    def test_external_enqueue_survives_failed_commit(self, storage, jobs):
        external = RecordingQueue()
        storage.set_job_queue("broker", external)

        tx = storage.create_transaction()
        tx.add_to_queue("broker", "1")
        tx.add_job_state("999", NewState("Enqueued"))

        with pytest.raises(CommitError):
            tx.commit()
        assert external.calls == [("broker", "1")]

    def test_after_commit_failure_propagates(self, storage, fetch):
        def explode():
            raise RuntimeError("boom")

        tx = storage.create_transaction()
        tx.increment_counter("c")
        tx.after_commit(explode)

        with pytest.raises(RuntimeError):
            tx.commit()
        assert fetch(Counter)[0].value == 1


class TestAtomicity:
    """All-or-nothing commits."""

    def test_failure_rolls_back_whole_batch(self, storage, jobs, fetch):
        tx = storage.create_transaction()
        tx.increment_counter("c")
        tx.add_to_set("s", "v")
        tx.insert_to_list("k", "a")
        tx.set_job_state("999", NewState("Enqueued"))

        with pytest.raises(CommitError) as excinfo:
            tx.commit()

        assert isinstance(excinfo.value.__cause__, IntegrityError)
        assert fetch(Counter) == []
        assert fetch(SetItem) == []
        assert fetch(ListItem) == []
        assert fetch(State) == []

    def test_failed_transaction_cannot_be_reused(self, storage, jobs):
        tx = storage.create_transaction()
        tx.add_job_state("999", NewState("Enqueued"))

        with pytest.raises(CommitError):
            tx.commit()
        with pytest.raises(TransactionDisposedError):
            tx.commit()

    def test_failure_recorded_in_metrics(self, storage, jobs):
        tx = storage.create_transaction()
        tx.add_job_state("999", NewState("Enqueued"))
        with pytest.raises(CommitError):
            tx.commit()

        metrics = get_logger().get_metrics()
        assert metrics["commits_failed"] == 1
        assert metrics["errors_by_type"] == {"IntegrityError": 1}

    def test_unexpected_error_is_wrapped(self, storage, jobs, fetch):
        """Failures outside the database driver still roll back and surface as CommitError."""
        queue = BrokenQueue()
        storage.set_job_queue("broken", queue)

        tx = storage.create_transaction()
        tx.increment_counter("c")
        tx.add_to_queue("broken", "1")

        with pytest.raises(CommitError) as excinfo:
            tx.commit()

        assert isinstance(excinfo.value.__cause__, KeyError)
        assert queue.notified is False
        assert fetch(Counter) == []

        metrics = get_logger().get_metrics()
        assert metrics["commits"] == 0
        assert metrics["commits_failed"] == 1
        assert metrics["errors_by_type"] == {"KeyError": 1}

    def test_commit_metrics(self, storage, jobs):
        _commit(storage, lambda tx: (tx.increment_counter("c"), tx.set_job_state("1", NewState("A"))))

        metrics = get_logger().get_metrics()
        assert metrics["commits"] == 1
        assert metrics["actions_applied"] == 2
        assert metrics["rows"]["inserted"] == 3
