"""Tests for workers.import_worker.ImportWorker."""

from __future__ import annotations

import pytest

from bundleflow.ledger import FileOutcome
from bundleflow.services.collaborators import StageResult
from bundleflow.storage.object_store import Location
from bundleflow.workers.envelope import FileEnvelope
from tests.helpers import NOTIFY_TO, ScriptedTransformer, make_zip, sheet


def transformed(pipeline, name="payroll.xlsx", data=None) -> FileEnvelope:
    """Register one file and run it through validate; returns the Stage-2 envelope."""
    pipeline.upload(name, data if data is not None else sheet(name))
    pipeline.detector.handle(name, NOTIFY_TO)
    pipeline.validate.run_once()
    (forward,) = pipeline.queue.envelopes(pipeline.settings.STAGE2_QUEUE)
    return forward


@pytest.mark.unit
class TestImport:
    def test_leases_for_long_running_timeout(self, pipeline):
        assert pipeline.importer_worker.visibility_timeout == pipeline.settings.LONG_RUNNING_TIMEOUT

    def test_success_completes_entry_and_notifies(self, pipeline):
        forward = transformed(pipeline)

        assert pipeline.importer_worker.run_once() == 1

        entry = pipeline.ledger.get_entry(forward.batch_id, "payroll.xlsx")
        assert entry.outcome is FileOutcome.COMPLETED
        assert entry.finished_at is not None
        assert pipeline.store.list(Location.COMPLETED) == ["payroll.xlsx"]
        assert pipeline.store.list(Location.IMPORTING) == []
        assert pipeline.importer.calls == [forward.job_id]

        (notice,) = pipeline.sender.sent
        assert notice.template == pipeline.settings.FILE_COMPLETED_TEMPLATE_ID
        assert notice.parameters["outcome"] == "completed"
        assert pipeline.ledger.is_batch_complete(forward.batch_id)

    @pytest.mark.parametrize(
        "outcome,reason",
        [
            (StageResult.failure("duplicate invoice numbers"), "duplicate invoice numbers"),
            (RuntimeError("deadlock detected"), "RuntimeError: deadlock detected"),
            ({"status": "ok"}, "import collaborator returned dict, expected StageResult"),
        ],
    )
    def test_unsuccessful_import_rejects(self, pipeline, outcome, reason):
        forward = transformed(pipeline)
        pipeline.importer.outcomes[forward.job_id] = outcome

        pipeline.importer_worker.run_once()

        entry = pipeline.ledger.get_entry(forward.batch_id, "payroll.xlsx")
        assert entry.outcome is FileOutcome.REJECTED
        assert entry.error_message == reason
        assert pipeline.store.list(Location.REJECTED) == ["payroll.xlsx"]
        (notice,) = pipeline.sender.sent
        assert notice.template == pipeline.settings.FILE_REJECTED_TEMPLATE_ID

    def test_malformed_job_id_rejects_without_calling_importer(self, pipeline):
        forward = transformed(pipeline)
        broken = forward.next_hop(job_id="JOB-7")

        assert pipeline.importer_worker.process(broken) == "rejected"

        entry = pipeline.ledger.get_entry(forward.batch_id, "payroll.xlsx")
        assert entry.error_message == "invalid job id: 'JOB-7'"
        assert pipeline.importer.calls == []


@pytest.mark.unit
class TestRedelivery:
    def test_finished_entry_is_not_marked_or_notified_again(self, pipeline):
        forward = transformed(pipeline)
        pipeline.importer_worker.process(forward)
        writes = pipeline.ledger.terminal_writes

        assert pipeline.importer_worker.process(forward) == "skipped"

        assert pipeline.ledger.terminal_writes == writes
        assert len(pipeline.sender.sent) == 1
        assert len(pipeline.importer.calls) == 1

    def test_finished_entry_left_in_importing_is_reconciled(self, pipeline):
        forward = transformed(pipeline)
        pipeline.ledger.mark_terminal(forward.batch_id, "payroll.xlsx", FileOutcome.COMPLETED)

        pipeline.importer_worker.process(forward)

        assert pipeline.store.list(Location.COMPLETED) == ["payroll.xlsx"]
        assert pipeline.store.list(Location.IMPORTING) == []

    def test_crash_between_move_and_mark_applies_mark_only(self, pipeline):
        forward = transformed(pipeline)
        pipeline.store.move(Location.IMPORTING, "payroll.xlsx", Location.COMPLETED)

        assert pipeline.importer_worker.process(forward) == "recovered"

        entry = pipeline.ledger.get_entry(forward.batch_id, "payroll.xlsx")
        assert entry.outcome is FileOutcome.COMPLETED
        assert pipeline.importer.calls == []
        assert len(pipeline.sender.sent) == 1

    def test_object_missing_everywhere_is_retried(self, pipeline):
        forward = transformed(pipeline)
        pipeline.store.remove(Location.IMPORTING, "payroll.xlsx")

        pipeline.importer_worker.run_once()

        assert len(pipeline.queue.pending(pipeline.settings.STAGE2_QUEUE)) == 1
        assert not pipeline.ledger.get_entry(forward.batch_id, "payroll.xlsx").finished


@pytest.mark.unit
class TestBatchFanIn:
    def test_last_finisher_sends_one_batch_summary(self, pipeline):
        pipeline.upload(
            "bundle.zip",
            make_zip({"a.xlsx": sheet("a"), "b.xlsx": sheet("b"), "c.xlsx": sheet("c")}),
        )
        report = pipeline.detector.handle("bundle.zip", NOTIFY_TO)
        job_b = ScriptedTransformer.job_for(report.batch_id, "b.xlsx", 0)
        pipeline.importer.outcomes[job_b] = StageResult.failure("totals do not balance")

        pipeline.run_until_idle()

        (summary,) = pipeline.batch_notifications()
        assert summary.parameters["batch_id"] == report.batch_id
        assert summary.parameters["origin_file_name"] == "bundle.zip"
        assert summary.parameters["total"] == 3
        assert summary.parameters["completed"] == 2
        assert summary.parameters["rejected"] == 1
        assert [f["file_name"] for f in summary.parameters["files"]] == ["a.xlsx", "b.xlsx", "c.xlsx"]
        assert len(pipeline.sender.sent) == 1
