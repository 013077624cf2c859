import io
import zipfile
from datetime import timedelta

from moodle_interface.classes import Participant, SubmissionFile, SubmissionRecord
from MoodleGrader import matcher


def _zip_bytes(members):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, content in members.items():
            archive.writestr(name, content)
    return buffer.getvalue()


class TestMatch:
    """Tests for roster reconciliation."""

    def test_submitted_and_missing(self, alice, bob, alice_files):
        records = matcher.match([alice, bob], {alice.id: alice_files})

        assert [r.participant_id for r in records] == [alice.id, bob.id]
        assert records[0].status is SubmissionRecord.Status.PRESENT
        assert records[0].files == tuple(alice_files)
        assert records[1].status is SubmissionRecord.Status.MISSING
        assert records[1].files == ()

    def test_one_record_per_participant_in_roster_order(self, alice, bob):
        carol = Participant(7, "Carol")
        records = matcher.match([carol, bob, alice, bob], {})

        assert [r.participant_id for r in records] == [carol.id, bob.id, alice.id]

    def test_strangers_are_ignored(self, alice, alice_files):
        records = matcher.match([alice], {alice.id: alice_files, 99: alice_files})

        assert [r.participant_id for r in records] == [alice.id]

    def test_submitted_at_is_latest_modification(self, alice, due):
        files = [
            SubmissionFile("a.hs", content=b"a", timemodified=due),
            SubmissionFile("b.hs", content=b"b", timemodified=due + timedelta(hours=2)),
        ]
        record, = matcher.match([alice], {alice.id: files})

        assert record.submitted_at == due + timedelta(hours=2)

    def test_empty_file_list_is_malformed(self, alice):
        record, = matcher.match([alice], {alice.id: []})

        assert record.status is SubmissionRecord.Status.MALFORMED
        assert "no files" in record.diagnostic

    def test_malformed_record_keeps_files(self, alice):
        files = [SubmissionFile("empty.hs", content=b"")]
        record, = matcher.match([alice], {alice.id: files})

        assert record.status is SubmissionRecord.Status.MALFORMED
        assert record.files == tuple(files)
        assert not record.gradeable


class TestCheckFiles:
    """Tests for the structural submission checks."""

    def test_valid_files_pass(self):
        files = [
            SubmissionFile("Main.hs", "src", content=b"main = pure ()"),
            SubmissionFile("work.zip", content=_zip_bytes({"Lib.hs": "module Lib where"})),
        ]
        assert matcher.check_files(files) is None

    def test_failed_download(self):
        files = [SubmissionFile("Main.hs", error="connection reset")]
        assert "download of Main.hs failed" in matcher.check_files(files)

    def test_zero_byte_file(self):
        assert "empty" in matcher.check_files([SubmissionFile("Main.hs", content=b"")])

    def test_path_traversal(self):
        files = [SubmissionFile("passwd", "../../etc", content=b"root")]
        assert "escapes" in matcher.check_files(files)

    def test_nul_byte_in_name(self):
        assert "NUL" in matcher.check_files([SubmissionFile("a\x00.hs", content=b"x")])

    def test_empty_name(self):
        assert "empty name" in matcher.check_files([SubmissionFile(" ", content=b"x")])

    def test_duplicate_path(self):
        files = [
            SubmissionFile("Main.hs", "src", content=b"a"),
            SubmissionFile("Main.hs", "src", content=b"b"),
        ]
        assert "duplicate" in matcher.check_files(files)

    def test_unreadable_zip(self):
        files = [SubmissionFile("work.zip", content=b"definitely not a zip")]
        assert "cannot be opened" in matcher.check_files(files)

    def test_unreadable_tarball(self):
        files = [SubmissionFile("work.tar.gz", content=b"definitely not a tarball")]
        assert "cannot be opened" in matcher.check_files(files)

    def test_corrupt_deflate_stream(self, corrupt_zip):
        files = [SubmissionFile("work.zip", content=corrupt_zip)]
        assert "cannot be opened" in matcher.check_files(files)

    def test_corrupt_archive_marks_only_that_participant(self, alice, bob, alice_files, corrupt_zip):
        records = matcher.match([alice, bob], {
            alice.id: [SubmissionFile("work.zip", content=corrupt_zip)],
            bob.id: alice_files,
        })

        assert records[0].status is SubmissionRecord.Status.MALFORMED
        assert "work.zip" in records[0].diagnostic
        assert records[1].status is SubmissionRecord.Status.PRESENT
