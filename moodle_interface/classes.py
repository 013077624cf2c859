#!/usr/bin/env python
from __future__ import annotations

import dataclasses
import enum
import logging
import posixpath
import typing
from datetime import datetime, timezone

from .exceptions import NotFound

log = logging.getLogger(__name__)


def _from_timestamp(value: typing.Any) -> datetime | None:
  """Moodle reports times as unix seconds, with 0 meaning 'not set'."""
  if value is None or isinstance(value, bool):
    return None
  try:
    seconds = int(value)
  except (TypeError, ValueError):
    log.warning(f"Ignoring unparseable timestamp: {value!r}")
    return None
  if seconds <= 0:
    return None
  return datetime.fromtimestamp(seconds, tz=timezone.utc)


def _strip_leading_slash(filepath: str | None) -> str:
  # Moodle file paths look like "/" or "/src/"
  return (filepath or "").lstrip("/")


@dataclasses.dataclass(frozen=True)
class Assignment:
  id: int
  name: str
  course_id: int
  max_grade: float
  due_date: datetime | None = None

  @classmethod
  def from_json(cls, data: dict, *, course_id: int) -> Assignment:
    return cls(
      id=int(data["id"]),
      name=str(data.get("name", "")),
      course_id=course_id,
      max_grade=float(data.get("grade", 0)),
      due_date=_from_timestamp(data.get("duedate")),
    )

  def late_by(self, timestamp: datetime | None) -> int:
    """Seconds `timestamp` falls after the due date, never negative."""
    if self.due_date is None or timestamp is None:
      return 0
    return max(0, int((timestamp - self.due_date).total_seconds()))

  def clamp(self, score: float) -> float:
    return max(0.0, min(float(score), self.max_grade))


@dataclasses.dataclass(frozen=True)
class Course:
  id: int
  fullname: str
  assignments: tuple[Assignment, ...] = ()

  @classmethod
  def from_json(cls, data: dict) -> Course:
    course_id = int(data["id"])
    return cls(
      id=course_id,
      fullname=str(data.get("fullname", "")),
      assignments=tuple(
        Assignment.from_json(a, course_id=course_id)
        for a in data.get("assignments") or []
      ),
    )

  def get_assignment(self, assignment_id: int) -> Assignment:
    for assignment in self.assignments:
      if assignment.id == assignment_id:
        return assignment
    raise NotFound("assignment", assignment_id)


@dataclasses.dataclass(frozen=True)
class Participant:
  id: int
  fullname: str
  email: str = ""
  enrollment_status: str = "active"

  @classmethod
  def from_json(cls, data: dict) -> Participant:
    return cls(
      id=int(data["id"]),
      fullname=str(data.get("fullname") or f"User {data['id']}"),
      email=str(data.get("email") or ""),
      enrollment_status="suspended" if data.get("suspended") else "active",
    )

  def __str__(self):
    return f"{self.fullname} ({self.id})"


@dataclasses.dataclass(frozen=True)
class SubmissionFile:
  """One submitted file. `content` is filled in once the file is downloaded."""
  filename: str
  filepath: str = ""
  fileurl: str | None = None
  content: bytes | None = None
  timemodified: datetime | None = None
  mimetype: str | None = None
  error: str | None = None

  @classmethod
  def from_json(cls, data: dict) -> SubmissionFile:
    return cls(
      filename=str(data.get("filename", "")),
      filepath=_strip_leading_slash(data.get("filepath")),
      fileurl=data.get("fileurl"),
      timemodified=_from_timestamp(data.get("timemodified")),
      mimetype=data.get("mimetype"),
    )

  @property
  def fullpath(self) -> str:
    return posixpath.join(self.filepath, self.filename)

  @property
  def size(self) -> int:
    return 0 if self.content is None else len(self.content)

  def __str__(self):
    return f"SubmissionFile({self.fullpath} : {self.size} bytes)"


@dataclasses.dataclass(frozen=True)
class SubmissionRecord:

  class Status(enum.Enum):
    PRESENT = "present"
    MISSING = "missing"
    MALFORMED = "malformed"

  participant_id: int
  status: SubmissionRecord.Status
  files: tuple[SubmissionFile, ...] = ()
  submitted_at: datetime | None = None
  diagnostic: str | None = None

  @property
  def gradeable(self) -> bool:
    return self.status is SubmissionRecord.Status.PRESENT

  def __str__(self):
    return f"SubmissionRecord({self.participant_id} : {self.status.value} : {len(self.files)} files)"


@dataclasses.dataclass(frozen=True)
class GradeResult:

  class Status(enum.Enum):
    GRADED = "graded"
    FAILED = "grading-failed"
    SKIPPED = "skipped"

  participant_id: int
  status: GradeResult.Status
  score: float | None = None
  feedback: str = ""
  diagnostic: str | None = None

  def __post_init__(self):
    if self.status is GradeResult.Status.GRADED and self.score is None:
      raise ValueError("A graded result must carry a score.")
    if self.status is GradeResult.Status.FAILED and self.score is not None:
      raise ValueError("A failed grading result cannot carry a score.")

  @classmethod
  def graded(cls, participant_id: int, score: float, feedback: str = "") -> GradeResult:
    return cls(participant_id, cls.Status.GRADED, score=float(score), feedback=feedback)

  @classmethod
  def failed(cls, participant_id: int, diagnostic: str) -> GradeResult:
    return cls(participant_id, cls.Status.FAILED, diagnostic=diagnostic)

  @classmethod
  def skipped(cls, participant_id: int, *, score: float | None, feedback: str,
              diagnostic: str | None = None) -> GradeResult:
    return cls(participant_id, cls.Status.SKIPPED, score=score, feedback=feedback,
               diagnostic=diagnostic)

  def __str__(self):
    score = "None" if self.score is None else f"{self.score:.4g}"
    return f"GradeResult({self.participant_id} : {self.status.value} : {score})"


@dataclasses.dataclass(frozen=True)
class PublishOutcome:

  class Result(enum.Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    NOT_ATTEMPTED = "not-attempted"

  participant_id: int
  result: PublishOutcome.Result
  reason: str | None = None

  @classmethod
  def accepted(cls, participant_id: int) -> PublishOutcome:
    return cls(participant_id, cls.Result.ACCEPTED)

  @classmethod
  def rejected(cls, participant_id: int, reason: str) -> PublishOutcome:
    return cls(participant_id, cls.Result.REJECTED, reason)

  @classmethod
  def not_attempted(cls, participant_id: int, reason: str) -> PublishOutcome:
    return cls(participant_id, cls.Result.NOT_ATTEMPTED, reason)

  def __str__(self):
    if self.reason:
      return f"{self.result.value}({self.reason})"
    return self.result.value
