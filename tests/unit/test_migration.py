"""Unit tests for the migration workflow."""

import threading

import pytest

from box_migrator.core.migration import MigrationWorkflow, run_job
from box_migrator.core.resume import MigrationPhase
from box_migrator.exceptions import BoxAPIError, WorkflowAbortedError
from box_migrator.types import (
    BootstrapResult,
    ItemKind,
    ItemOperation,
    ItemResult,
    ItemStatus,
)

MANAGED = "9000"


def _results(store, operation, status=None):
    return [
        r
        for r in store.item_results
        if r.operation == operation and (status is None or r.status == status)
    ]


@pytest.fixture
def alice_content(fake_box):
    """Three root files, one shared folder with an outside editor."""
    for n in (101, 102, 103):
        fake_box.add_item("file", "1001", f"doc{n}.txt", item_id=str(n))
    shared = fake_box.add_item("folder", "1001", "Team", item_id="201")
    fake_box.add_collaboration(shared["id"], "2001", "editor")
    return fake_box


class TestFullRun:
    """A fresh job runs every phase."""

    def test_runs_all_phases(self, make_context, memory_store, alice_content, builders):
        fake_box = alice_content
        memory_store.add_job(
            builders.job(1),
            items=[builders.item(f"r{n}", str(n)) for n in (101, 102, 103)],
            permissions=[builders.permission("p1", "201")],
        )
        context = make_context()

        report = MigrationWorkflow(context, memory_store.dequeue_next_job()).run()

        assert report.resumed_from == MigrationPhase.NOT_BOOTSTRAPPED
        assert report.reached == MigrationPhase.FINISHED
        assert report.moves.succeeded == 3
        assert report.collaborations.succeeded == 1
        assert report.item_failures == 0

        job = memory_store.fetch_job(1)
        assert job.is_finished
        assert job.user_id == "1001"
        for n in ("101", "102", "103"):
            assert fake_box.items[n]["parent"]["id"] == job.managed_folder_id

        roles = {
            c["accessible_by"]["id"]: c["role"] for c in fake_box.collaborations.values()
        }
        assert roles["2001"] == "viewer"
        assert roles["1001"] == "viewer"
        assert fake_box.groups == {}
        assert report.cleanup.group_deleted
        assert len(memory_store.cleanup_results) == 1
        assert context.notifier.sent == []

    def test_user_client_is_created_before_workers_start(
        self, make_context, memory_store, alice_content, builders
    ):
        memory_store.add_job(
            builders.job(1),
            items=[builders.item(f"r{n}", str(n)) for n in (101, 102, 103)],
            permissions=[builders.permission("p1", "201")],
        )
        context = make_context()
        original = context.clients.for_user
        callers = []

        def for_user(user_id):
            callers.append((user_id, threading.get_ident()))
            return original(user_id)

        context.clients.for_user = for_user

        MigrationWorkflow(context, memory_store.dequeue_next_job()).run()

        assert [c for c in callers if c[0] == "1001"] == [("1001", threading.get_ident())]

    def test_results_carry_audit_payloads(
        self, make_context, memory_store, alice_content, builders
    ):
        memory_store.add_job(builders.job(1), items=[builders.item("r1", "101")])

        run_job(make_context(), memory_store.dequeue_next_job())

        (result,) = _results(memory_store, ItemOperation.MOVE)
        assert result.status == ItemStatus.SUCCEEDED
        assert '"ItemId": "101"' in result.request
        assert len(result.correlation_id) == 32
        (boot,) = memory_store.bootstrap_results
        assert '"UserLogin": "alice@example.edu"' in boot.request

    def test_finished_job_does_nothing(self, make_context, memory_store, fake_box, builders):
        memory_store.add_job(builders.job(1, completed_at="2026-01-01T00:00:00+00:00"))
        context = make_context()

        report = MigrationWorkflow(context, memory_store.fetch_job(1)).run()

        assert report.reached == MigrationPhase.FINISHED
        assert context.clients.requested == []


class TestResume:
    """Runs pick up after the last durable record."""

    def test_only_remaining_items_are_moved(self, make_context, memory_store, fake_box, builders):
        fake_box.add_item("folder", MANAGED, "Alice", item_id="88")
        ids = [str(n) for n in range(101, 106)]
        for item_id in ids:
            fake_box.add_item("file", "1001", f"f{item_id}", item_id=item_id)
        memory_store.add_job(
            builders.job(1), items=[builders.item(f"r{i}", i) for i in ids]
        )
        memory_store.insert_bootstrap_result(
            BootstrapResult(job_id=1, user_id="1001", managed_folder_id="88", correlation_id="c")
        )
        for record_id in ("r101", "r102"):
            memory_store.insert_item_result(
                ItemResult(
                    job_id=1,
                    record_id=record_id,
                    operation=ItemOperation.MOVE,
                    status=ItemStatus.SUCCEEDED,
                    correlation_id="c",
                )
            )

        report = MigrationWorkflow(make_context(), memory_store.dequeue_next_job()).run()

        assert report.resumed_from == MigrationPhase.BOOTSTRAPPED
        assert fake_box.mutation_count("update_file_parent") == 3
        assert fake_box.mutation_count("create_folder") == 0
        assert report.moves.succeeded == 3

    def test_rerun_after_abort_completes(self, make_context, memory_store, alice_content, builders):
        fake_box = alice_content
        memory_store.add_job(builders.job(1), items=[builders.item("r1", "101")])
        fake_box.fail("list_user_memberships", BoxAPIError(403, body="denied"))
        context = make_context()

        with pytest.raises(WorkflowAbortedError) as exc_info:
            MigrationWorkflow(context, memory_store.dequeue_next_job()).run()
        assert exc_info.value.phase == "cleanup"
        memory_store.release_job(1)
        moves_before = fake_box.mutation_count("update_file_parent")

        report = MigrationWorkflow(context, memory_store.dequeue_next_job()).run()

        assert report.resumed_from == MigrationPhase.COLLABORATIONS_UPDATED
        assert fake_box.mutation_count("update_file_parent") == moves_before
        assert memory_store.fetch_job(1).is_finished


class TestFlags:
    """Tests for the skip-all and skip-cleanup job flags."""

    def test_skip_all_makes_no_calls(self, make_context, memory_store, alice_content, builders):
        memory_store.add_job(
            builders.job(1, skip_all=True), items=[builders.item("r1", "101")]
        )
        context = make_context()

        report = MigrationWorkflow(context, memory_store.dequeue_next_job()).run()

        assert report.reached == MigrationPhase.FINISHED
        assert context.clients.requested == []
        assert alice_content.mutations == []
        assert memory_store.fetch_job(1).is_finished

    def test_skip_cleanup_leaves_group(self, make_context, memory_store, alice_content, builders):
        memory_store.add_job(
            builders.job(1, skip_cleanup=True), items=[builders.item("r1", "101")]
        )

        report = MigrationWorkflow(make_context(), memory_store.dequeue_next_job()).run()

        assert report.cleanup_skipped
        assert report.cleanup is None
        assert len(alice_content.groups) == 1
        assert memory_store.cleanup_results == []
        assert memory_store.fetch_job(1).is_finished


class TestItemIsolation:
    """A bad item never blocks the rest of its phase."""

    def test_invalid_and_non_movable_items_are_skipped(
        self, make_context, memory_store, alice_content, builders
    ):
        memory_store.add_job(
            builders.job(1),
            items=[
                builders.item("r1", "101"),
                builders.item("r2", None),
                builders.item("r3", "not-a-number"),
                builders.item("r4", "102", skip_reason="ITEM_IS_WEBLINK"),
                builders.item("r5", "103"),
            ],
        )

        report = MigrationWorkflow(make_context(), memory_store.dequeue_next_job()).run()

        assert report.moves.succeeded == 2
        assert report.moves.skipped == 3
        skipped = _results(memory_store, ItemOperation.MOVE, ItemStatus.SKIPPED)
        assert {r.record_id for r in skipped} == {"r2", "r3", "r4"}
        assert alice_content.items["102"]["parent"]["id"] == "0"

    def test_unknown_skip_reason_is_still_moved(
        self, make_context, memory_store, alice_content, builders
    ):
        memory_store.add_job(
            builders.job(1), items=[builders.item("r1", "101", skip_reason="SOMETHING_ELSE")]
        )
        report = MigrationWorkflow(make_context(), memory_store.dequeue_next_job()).run()
        assert report.moves.succeeded == 1

    def test_failed_item_is_recorded_and_digested(
        self, make_context, memory_store, alice_content, builders
    ):
        memory_store.add_job(
            builders.job(1),
            items=[builders.item("r1", "101"), builders.item("r2", "999999", ItemKind.FOLDER)],
        )
        context = make_context()

        report = MigrationWorkflow(context, memory_store.dequeue_next_job()).run()

        assert report.reached == MigrationPhase.FINISHED
        assert report.moves.succeeded == 1
        assert report.item_failures == 1
        (failed,) = _results(memory_store, ItemOperation.MOVE, ItemStatus.FAILED)
        assert failed.record_id == "r2"
        assert failed.detail.startswith("PermanentFault")
        (digest,) = context.notifier.sent
        assert digest.to == ["ops@example.edu"]
        assert '"record_id": "r2"' in digest.text_body


class TestAbort:
    """Singleton phase faults stop the run."""

    def test_bootstrap_fault_aborts_without_state(
        self, make_context, memory_store, alice_content, builders
    ):
        memory_store.add_job(builders.job(1), items=[builders.item("r1", "101")])
        alice_content.fail("find_users_by_login", BoxAPIError(403, body="forbidden"))
        context = make_context()

        with pytest.raises(WorkflowAbortedError) as exc_info:
            MigrationWorkflow(context, memory_store.dequeue_next_job()).run()

        assert exc_info.value.phase == "bootstrap"
        assert exc_info.value.cause.status_code == 403
        job = memory_store.fetch_job(1)
        assert not job.is_bootstrapped
        assert not job.is_finished
        assert memory_store.item_results == []
        (abort,) = context.notifier.sent
        assert "aborted during bootstrap" in abort.subject
