import zipfile

import yaml

from moodle_interface.classes import Participant, SubmissionFile, SubmissionRecord
from MoodleGrader.export import participant_folder, sanitize_filename, write_submissions


def _records(alice, bob, alice_files):
    return [
        SubmissionRecord(alice.id, SubmissionRecord.Status.PRESENT, files=tuple(alice_files),
                         submitted_at=alice_files[0].timemodified),
        SubmissionRecord(bob.id, SubmissionRecord.Status.MISSING),
    ]


class TestExport:
    """Tests for writing downloaded submissions to disk."""

    def test_sanitize_filename(self):
        assert sanitize_filename("Zoë O'Brien / Smith") == "Zoë-O_Brien-_-Smith"
        assert sanitize_filename("..") == "unnamed"

    def test_participant_folder(self):
        assert participant_folder(Participant(5, "Alice Example")) == "5_Alice-Example"

    def test_directory_export(self, tmp_path, assignment, alice, bob, alice_files):
        output = tmp_path / "submissions"

        write_submissions(assignment, [alice, bob], _records(alice, bob, alice_files), output)

        assert (output / "5_Alice-Example" / "src" / "Main.hs").read_bytes() == b"main = pure ()\n"
        assert not (output / "6_Bob-Example").exists()
        manifest = yaml.safe_load((output / "manifest.yaml").read_text(encoding="utf-8"))
        assert manifest["assignment_id"] == 42
        assert [s["status"] for s in manifest["submissions"]] == ["present", "missing"]
        assert manifest["submissions"][0]["files"] == ["src/Main.hs"]
        assert manifest["submissions"][0]["late_seconds"] == 0

    def test_zip_export(self, tmp_path, assignment, alice, bob, alice_files):
        output = tmp_path / "out" / "lab1.zip"

        write_submissions(assignment, [alice, bob], _records(alice, bob, alice_files), output)

        with zipfile.ZipFile(output) as archive:
            assert sorted(archive.namelist()) == ["5_Alice-Example/src/Main.hs", "manifest.yaml"]

    def test_unsafe_paths_are_not_written(self, tmp_path, assignment, alice):
        files = (SubmissionFile("evil.sh", "../..", content=b"rm -rf"),)
        record = SubmissionRecord(alice.id, SubmissionRecord.Status.MALFORMED, files=files,
                                  diagnostic="escapes")
        output = tmp_path / "submissions"

        write_submissions(assignment, [alice], [record], output)

        assert not (tmp_path / "evil.sh").exists()
        manifest = yaml.safe_load((output / "manifest.yaml").read_text(encoding="utf-8"))
        assert manifest["submissions"][0]["diagnostic"] == "escapes"
