"""Tests for workers.validate_worker.ValidateWorker."""

from __future__ import annotations

import uuid

import pytest

from bundleflow.ledger import FileOutcome
from bundleflow.services.collaborators import StageResult
from bundleflow.storage.object_store import Location
from bundleflow.workers.envelope import FileEnvelope
from tests.helpers import NOTIFY_TO, make_zip, sheet


def register(pipeline, name="payroll.xlsx", data=None, email=NOTIFY_TO):
    pipeline.upload(name, data if data is not None else sheet(name))
    return pipeline.detector.handle(name, email)


@pytest.mark.unit
class TestTransformSuccess:
    def test_success_moves_to_importing_and_forwards(self, pipeline):
        report = register(pipeline)
        settings = pipeline.settings

        assert pipeline.validate.run_once() == 1

        assert pipeline.store.list(Location.IMPORTING) == ["payroll.xlsx"]
        assert pipeline.store.list(Location.PROCESSING) == []
        (forward,) = pipeline.queue.envelopes(settings.STAGE2_QUEUE)
        assert forward.batch_id == report.batch_id
        assert forward.file_status is True
        assert forward.process_status == "transformed"
        assert forward.has_valid_job_id
        assert forward.notification_email == NOTIFY_TO

        entry = pipeline.ledger.get_entry(report.batch_id, "payroll.xlsx")
        assert not entry.finished
        assert pipeline.queue.pending(settings.STAGE1_QUEUE) == []
        assert pipeline.sender.sent == []

    def test_template_is_looked_up_by_type_key(self, pipeline):
        pipeline.store.put(Location.TEMPLATES, "payroll.xlsx", b"template-bytes")
        register(pipeline, "Payroll_March.xlsx")

        pipeline.validate.run_once()

        assert pipeline.transformer.calls[0][3] == b"template-bytes"

    def test_missing_template_is_not_fatal(self, pipeline, caplog):
        register(pipeline, "vendors.csv")

        with caplog.at_level("WARNING"):
            pipeline.validate.run_once()

        assert pipeline.transformer.calls[0][3] is None
        assert "No template vendors.xlsx" in caplog.text
        assert pipeline.store.list(Location.IMPORTING) == ["vendors.csv"]

    def test_object_left_in_importing_is_picked_up(self, pipeline):
        report = register(pipeline)
        pipeline.store.move(Location.PROCESSING, "payroll.xlsx", Location.IMPORTING)

        pipeline.validate.run_once()

        assert len(pipeline.queue.envelopes(pipeline.settings.STAGE2_QUEUE)) == 1
        assert pipeline.transformer.calls[0][:2] == (report.batch_id, "payroll.xlsx")


@pytest.mark.unit
class TestTransformFailure:
    @pytest.mark.parametrize(
        "outcome,reason",
        [
            (StageResult.failure("missing column Amount"), "missing column Amount"),
            (StageResult.error("staging table locked"), "staging table locked"),
            (ValueError("bad cell B7"), "ValueError: bad cell B7"),
            ("ok", "validate collaborator returned str, expected StageResult"),
        ],
    )
    def test_unsuccessful_transform_rejects_file(self, pipeline, outcome, reason):
        pipeline.transformer.outcomes["payroll.xlsx"] = outcome
        report = register(pipeline)

        pipeline.validate.run_once()

        entry = pipeline.ledger.get_entry(report.batch_id, "payroll.xlsx")
        assert entry.finished
        assert entry.outcome is FileOutcome.REJECTED
        assert entry.error_message == reason
        assert pipeline.store.list(Location.REJECTED) == ["payroll.xlsx"]
        assert pipeline.queue.pending(pipeline.settings.STAGE2_QUEUE) == []

        (notice,) = pipeline.sender.sent
        assert notice.template == pipeline.settings.FILE_REJECTED_TEMPLATE_ID
        assert notice.recipient == NOTIFY_TO
        assert notice.parameters["error_message"] == reason

    def test_rejection_in_multi_file_batch_sends_nothing_yet(self, pipeline):
        pipeline.transformer.outcomes["a.xlsx"] = StageResult.failure("bad")
        register(pipeline, "bundle.zip", make_zip({"a.xlsx": sheet("a"), "b.xlsx": sheet("b")}))

        pipeline.validate.run_once()

        assert pipeline.sender.sent == []
        assert pipeline.store.list(Location.REJECTED) == ["a.xlsx"]


@pytest.mark.unit
class TestAdmission:
    def test_finished_entry_is_skipped_without_transform(self, pipeline):
        report = register(pipeline)
        pipeline.ledger.mark_terminal(report.batch_id, "payroll.xlsx", FileOutcome.REJECTED, "x")

        pipeline.validate.run_once()

        assert pipeline.transformer.calls == []
        assert pipeline.store.list(Location.REJECTED) == ["payroll.xlsx"]
        assert pipeline.validate.get_stats()["jobs_skipped"] == 1

    def test_unknown_entry_is_skipped(self, pipeline):
        envelope = FileEnvelope.create("ghost.xlsx", str(uuid.uuid4()))
        assert pipeline.validate.process(envelope) == "skipped"

    def test_superseded_attempt_is_skipped(self, pipeline):
        report = register(pipeline, "bundle.zip", make_zip({"a.xlsx": sheet("a")}))
        pipeline.ledger.begin_batch("bundle.zip", rerun=True)
        pipeline.ledger.register_entry(report.batch_id, "a.xlsx", extracted=True)

        stale = FileEnvelope.create("a.xlsx", report.batch_id, retry_count=0)
        assert pipeline.validate.process(stale) == "skipped"
        assert pipeline.transformer.calls == []

    def test_rerun_purges_previous_staging(self, pipeline):
        report = register(pipeline)
        pipeline.transformer.staged[(report.batch_id, "payroll.xlsx")] = [0]

        envelope = FileEnvelope.create("payroll.xlsx", report.batch_id, rerun=True)
        pipeline.validate.process(envelope)

        assert pipeline.transformer.purges == [(report.batch_id, "payroll.xlsx")]
        assert pipeline.transformer.staged[(report.batch_id, "payroll.xlsx")] == [0]
        assert len(pipeline.transformer.calls) == 1


@pytest.mark.unit
class TestRecovery:
    def test_missing_object_leaves_message_for_redelivery(self, pipeline):
        report = register(pipeline)
        pipeline.store.remove(Location.PROCESSING, "payroll.xlsx")

        pipeline.validate.run_once()

        assert len(pipeline.queue.pending(pipeline.settings.STAGE1_QUEUE)) == 1
        assert pipeline.validate.get_stats()["jobs_failed"] == 1
        assert not pipeline.ledger.get_entry(report.batch_id, "payroll.xlsx").finished

    def test_object_already_rejected_gets_missing_mark(self, pipeline):
        report = register(pipeline)
        pipeline.store.move(Location.PROCESSING, "payroll.xlsx", Location.REJECTED)

        envelope = FileEnvelope.create("payroll.xlsx", report.batch_id)
        assert pipeline.validate.process(envelope) == "recovered"

        entry = pipeline.ledger.get_entry(report.batch_id, "payroll.xlsx")
        assert entry.outcome is FileOutcome.REJECTED
        assert entry.error_message == "validation interrupted after rejection"
        assert len(pipeline.sender.sent) == 1


@pytest.mark.unit
def test_duplicate_rerun_delivery_keeps_current_staging(pipeline):
    report = register(pipeline)
    envelope = FileEnvelope.create("payroll.xlsx", report.batch_id, rerun=True)
    pipeline.validate.process(envelope)
    assert pipeline.store.list(Location.IMPORTING) == ["payroll.xlsx"]

    pipeline.validate.process(envelope)

    assert pipeline.transformer.purges == [(report.batch_id, "payroll.xlsx")]
