import threading
from datetime import timedelta

import pytest
import yaml

from moodle_interface.classes import (
    GradeResult,
    Participant,
    PublishOutcome,
    SubmissionRecord,
)
from MoodleGrader.exceptions import ReportError
from MoodleGrader.report import RunReport, load_grade_results


@pytest.fixture
def report(assignment, alice, bob, due):
    run_report = RunReport(assignment)
    run_report.add_participant(alice)
    run_report.add_participant(bob)
    run_report.record_submission(
        SubmissionRecord(alice.id, SubmissionRecord.Status.PRESENT, submitted_at=due + timedelta(minutes=2)))
    run_report.record_submission(SubmissionRecord(bob.id, SubmissionRecord.Status.MISSING))
    run_report.record_grade(GradeResult.graded(alice.id, 7.5, "Nice"))
    run_report.record_grade(GradeResult.skipped(bob.id, score=0.0, feedback="No submission was received."))
    run_report.record_publish(PublishOutcome.accepted(alice.id))
    run_report.record_publish(PublishOutcome.rejected(bob.id, "nopermissions"))
    return run_report


class TestRunReport:
    """Tests for the per-participant outcome table."""

    def test_slots_are_write_once(self, report, alice):
        with pytest.raises(ReportError, match="already recorded"):
            report.record_grade(GradeResult.graded(alice.id, 1.0))

    def test_unknown_participant_is_rejected(self, report):
        with pytest.raises(ReportError, match="not in the report"):
            report.record_grade(GradeResult.graded(99, 1.0))

    def test_duplicate_participant_is_rejected(self, report, alice):
        with pytest.raises(ReportError):
            report.add_participant(alice)

    def test_finalized_report_is_read_only(self, assignment, alice):
        run_report = RunReport(assignment)
        run_report.add_participant(alice)
        run_report.finalize()

        with pytest.raises(ReportError, match="finalized"):
            run_report.record_grade(GradeResult.graded(alice.id, 1.0))

    def test_concurrent_writes_keep_one_grade_per_participant(self, assignment):
        run_report = RunReport(assignment)
        roster = [Participant(i, f"Student {i}") for i in range(200)]
        for participant in roster:
            run_report.add_participant(participant)

        errors = []

        def write(participant_id):
            try:
                run_report.record_grade(GradeResult.graded(participant_id, 1.0))
            except ReportError as e:
                errors.append(e)

        threads = [
            threading.Thread(target=write, args=(participant.id,))
            for participant in roster for _ in range(2)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(errors) == len(roster)
        assert all(entry.grade is not None for entry in run_report.entries())

    def test_summary(self, report):
        assert report.summary() == {"published": 1, "graded": 0, "skipped": 0, "failed": 1, "pending": 0}
        assert not report.all_succeeded
        assert report.summary_line() == "1 graded and published, 0 skipped, 1 failed"

    def test_render_lists_every_participant(self, report):
        rendered = report.render()

        assert "Alice Example" in rendered
        assert "Bob Example" in rendered
        assert "rejected(nopermissions)" in rendered
        assert "120" in rendered
        assert rendered.endswith("Summary: 1 graded and published, 0 skipped, 1 failed")

    def test_write_and_load_round_trip(self, report, tmp_path, alice, bob):
        path = tmp_path / "report.yaml"
        report.write(path)

        data = yaml.safe_load(path.read_text(encoding="utf-8"))
        assert data["course_id"] == 7
        assert data["assignment_id"] == 42
        assert data["grades"][0]["late_seconds"] == 120
        assert data["grades"][1]["diagnostic"] == "nopermissions"

        course_id, assignment_id, results = load_grade_results(path)
        assert (course_id, assignment_id) == (7, 42)
        assert results == [
            GradeResult.graded(alice.id, 7.5, "Nice"),
            GradeResult.skipped(bob.id, score=0.0, feedback="No submission was received."),
        ]


class TestLoadGradeResults:
    """Tests for reading hand-written grades files."""

    def test_status_defaults_to_graded(self, tmp_path):
        path = tmp_path / "grades.yaml"
        path.write_text(
            "course_id: 7\nassignment_id: 42\ngrades:\n"
            "  - participant_id: 5\n    score: 9\n    feedback: Great\n",
            encoding="utf-8",
        )

        _, _, results = load_grade_results(path)

        assert results == [GradeResult.graded(5, 9.0, "Great")]

    def test_duplicate_participant(self, tmp_path):
        path = tmp_path / "grades.yaml"
        path.write_text(
            "course_id: 7\nassignment_id: 42\ngrades:\n"
            "  - {participant_id: 5, score: 1}\n  - {participant_id: 5, score: 2}\n",
            encoding="utf-8",
        )

        with pytest.raises(ReportError, match="twice"):
            load_grade_results(path)

    def test_graded_without_score(self, tmp_path):
        path = tmp_path / "grades.yaml"
        path.write_text("course_id: 7\nassignment_id: 42\ngrades:\n  - {participant_id: 5}\n",
                        encoding="utf-8")

        with pytest.raises(ReportError, match="invalid"):
            load_grade_results(path)

    def test_missing_ids(self, tmp_path):
        path = tmp_path / "grades.yaml"
        path.write_text("grades: []\n", encoding="utf-8")

        with pytest.raises(ReportError, match="course_id"):
            load_grade_results(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ReportError, match="Could not read"):
            load_grade_results(tmp_path / "nope.yaml")
