import io
import struct
import threading
import zipfile
from datetime import datetime, timezone

import pytest

from moodle_interface.classes import (
    Assignment,
    Participant,
    PublishOutcome,
    SubmissionFile,
)
from moodle_interface.exceptions import NotFound

DUE = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeBackend:
    """In-memory LMSBackend that records every published grade."""

    def __init__(self, assignment, roster, submissions, *, reject=(), fail_fetch=None):
        self.assignment = assignment
        self.roster = list(roster)
        self.submissions = dict(submissions)
        self.reject = set(reject)
        self.fail_fetch = fail_fetch
        self.published = []
        self.lock = threading.Lock()

    def list_assignments(self, course_id):
        if self.fail_fetch is not None:
            raise self.fail_fetch
        return [self.assignment]

    def get_assignment(self, course_id, assignment_id):
        if self.fail_fetch is not None:
            raise self.fail_fetch
        if assignment_id != self.assignment.id:
            raise NotFound("assignment", assignment_id)
        return self.assignment

    def list_participants(self, assignment_id):
        return list(self.roster)

    def fetch_submissions(self, assignment_id):
        return dict(self.submissions)

    def publish_grade(self, assignment, participant_id, result):
        with self.lock:
            self.published.append((participant_id, result.score, result.feedback))
        if participant_id in self.reject:
            return PublishOutcome.rejected(participant_id, "nopermissions")
        return PublishOutcome.accepted(participant_id)


@pytest.fixture
def assignment():
    return Assignment(42, "Lab 1", 7, 10.0, due_date=DUE)


@pytest.fixture
def alice():
    return Participant(5, "Alice Example", "alice@example.edu")


@pytest.fixture
def bob():
    return Participant(6, "Bob Example", "bob@example.edu")


@pytest.fixture
def alice_files():
    return [SubmissionFile("Main.hs", "src", content=b"main = pure ()\n", timemodified=DUE)]


@pytest.fixture
def make_backend(assignment, alice, bob, alice_files):
    """Build a FakeBackend; defaults to Alice submitted, Bob did not."""

    def _make(roster=None, submissions=None, **kwargs):
        return FakeBackend(
            assignment,
            [alice, bob] if roster is None else roster,
            {alice.id: alice_files} if submissions is None else submissions,
            **kwargs
        )

    return _make


@pytest.fixture
def corrupt_zip():
    """A zip whose directory is intact but whose deflate stream is not."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        archive.writestr("Main.hs", b"main = putStrLn \"hello\"\n" * 20)
    data = bytearray(buffer.getvalue())
    name_length, extra_length = struct.unpack("<HH", data[26:30])
    # first byte of member data: final block with the reserved block type
    data[30 + name_length + extra_length] = 0xFF
    return bytes(data)


@pytest.fixture
def due():
    return DUE
