from __future__ import annotations

import collections
import dataclasses
import logging
import os
import threading
import typing

import yaml

from moodle_interface.classes import (
  Assignment,
  GradeResult,
  Participant,
  PublishOutcome,
  SubmissionRecord,
)
from MoodleGrader.exceptions import ReportError

log = logging.getLogger(__name__)

PUBLISHED = "published"
GRADED = "graded"
SKIPPED = "skipped"
FAILED = "failed"
PENDING = "pending"


@dataclasses.dataclass(frozen=True)
class ReportEntry:
  participant: Participant
  submission: SubmissionRecord | None = None
  grade: GradeResult | None = None
  publish: PublishOutcome | None = None

  def outcome(self, *, publish_enabled: bool = True) -> str:
    if self.grade is not None and self.grade.status is GradeResult.Status.FAILED:
      return FAILED
    if self.publish is not None and self.publish.result is PublishOutcome.Result.REJECTED:
      return FAILED
    if self.grade is None:
      return PENDING
    if self.grade.status is GradeResult.Status.SKIPPED:
      return SKIPPED
    if self.publish is not None and self.publish.result is PublishOutcome.Result.ACCEPTED:
      return PUBLISHED
    return PENDING if publish_enabled else GRADED


class RunReport:
  """
  Per-participant outcomes of one run, keyed by participant id.

  Each slot (submission, grade, publish) of an entry can be written exactly
  once, from any worker thread. Once `finalize` is called the report is
  read-only.
  """

  _SLOTS = ("submission", "grade", "publish")

  def __init__(self, assignment: Assignment, *, publish_enabled: bool = True):
    self.assignment = assignment
    self.publish_enabled = publish_enabled
    self._participants: dict[int, Participant] = {}
    self._slots: dict[int, dict[str, typing.Any]] = {}
    self._lock = threading.Lock()
    self._finalized = False

  def __len__(self):
    return len(self._participants)

  def __contains__(self, participant_id):
    return participant_id in self._participants

  @property
  def finalized(self) -> bool:
    return self._finalized

  def add_participant(self, participant: Participant) -> None:
    with self._lock:
      if self._finalized:
        raise ReportError("Report is finalized.")
      if participant.id in self._participants:
        raise ReportError(f"Participant {participant.id} is already in the report.")
      self._participants[participant.id] = participant
      self._slots[participant.id] = {}

  def _set(self, participant_id: int, slot: str, value) -> None:
    with self._lock:
      if self._finalized:
        raise ReportError("Report is finalized.")
      slots = self._slots.get(participant_id)
      if slots is None:
        raise ReportError(f"Participant {participant_id} is not in the report.")
      if slot in slots:
        raise ReportError(f"{slot} for participant {participant_id} was already recorded.")
      slots[slot] = value

  def record_submission(self, record: SubmissionRecord) -> None:
    self._set(record.participant_id, "submission", record)

  def record_grade(self, result: GradeResult) -> None:
    self._set(result.participant_id, "grade", result)

  def record_publish(self, outcome: PublishOutcome) -> None:
    self._set(outcome.participant_id, "publish", outcome)

  def finalize(self) -> RunReport:
    with self._lock:
      self._finalized = True
    return self

  def get(self, participant_id: int) -> ReportEntry:
    with self._lock:
      return ReportEntry(
        self._participants[participant_id],
        **{slot: self._slots[participant_id].get(slot) for slot in self._SLOTS}
      )

  def entries(self) -> list[ReportEntry]:
    with self._lock:
      ids = list(self._participants)
    return [self.get(participant_id) for participant_id in ids]

  def summary(self) -> dict[str, int]:
    counts = collections.Counter(
      entry.outcome(publish_enabled=self.publish_enabled) for entry in self.entries()
    )
    return {key: counts.get(key, 0) for key in (PUBLISHED, GRADED, SKIPPED, FAILED, PENDING)}

  @property
  def all_succeeded(self) -> bool:
    summary = self.summary()
    return summary[FAILED] == 0 and summary[PENDING] == 0

  def summary_line(self) -> str:
    summary = self.summary()
    parts = [f"{summary[PUBLISHED]} graded and published"]
    if summary[GRADED]:
      parts.append(f"{summary[GRADED]} graded (not published)")
    parts.append(f"{summary[SKIPPED]} skipped")
    parts.append(f"{summary[FAILED]} failed")
    if summary[PENDING]:
      parts.append(f"{summary[PENDING]} pending")
    return ", ".join(parts)

  def render(self) -> str:
    header = ("ID", "Name", "Submission", "Grade", "Score", "Publish", "Late (s)")
    rows = []
    problems = []
    for entry in self.entries():
      submission = entry.submission.status.value if entry.submission else "-"
      grade = entry.grade.status.value if entry.grade else "-"
      score = "-" if entry.grade is None or entry.grade.score is None else f"{entry.grade.score:g}"
      publish = str(entry.publish) if entry.publish else "-"
      late = self.assignment.late_by(entry.submission.submitted_at) if entry.submission else 0
      rows.append((str(entry.participant.id), entry.participant.fullname, submission, grade, score,
                   publish.split("(", 1)[0], str(late)))

      for source in (entry.submission, entry.grade):
        if source is not None and source.diagnostic:
          problems.append(f"  - {entry.participant}: {source.diagnostic}")
      if entry.publish is not None and entry.publish.reason:
        problems.append(f"  - {entry.participant}: publish {entry.publish}")

    widths = [max(len(row[i]) for row in [header, *rows]) for i in range(len(header))]
    lines = [
      "  ".join(cell.ljust(width) for cell, width in zip(header, widths)).rstrip(),
      "  ".join("-" * width for width in widths),
    ]
    lines.extend("  ".join(cell.ljust(width) for cell, width in zip(row, widths)).rstrip() for row in rows)
    if problems:
      lines.append("")
      lines.append("Details:")
      lines.extend(problems)
    lines.append("")
    lines.append(f"Summary: {self.summary_line()}")
    return "\n".join(lines)

  def to_dict(self) -> dict:
    grades = []
    for entry in self.entries():
      item: dict[str, typing.Any] = {
        "participant_id": entry.participant.id,
        "name": entry.participant.fullname,
      }
      if entry.submission is not None:
        item["submission"] = entry.submission.status.value
        item["late_seconds"] = self.assignment.late_by(entry.submission.submitted_at)
      if entry.grade is not None:
        item["status"] = entry.grade.status.value
        item["score"] = entry.grade.score
        item["feedback"] = entry.grade.feedback
      if entry.publish is not None:
        item["publish"] = entry.publish.result.value
      diagnostics = [
        source.diagnostic
        for source in (entry.submission, entry.grade)
        if source is not None and source.diagnostic
      ]
      if entry.publish is not None and entry.publish.reason:
        diagnostics.append(entry.publish.reason)
      if diagnostics:
        item["diagnostic"] = "; ".join(diagnostics)
      grades.append(item)

    return {
      "course_id": self.assignment.course_id,
      "assignment_id": self.assignment.id,
      "assignment_name": self.assignment.name,
      "max_grade": self.assignment.max_grade,
      "summary": self.summary(),
      "grades": grades,
    }

  def write(self, path: str | os.PathLike) -> None:
    try:
      with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(self.to_dict(), f, sort_keys=False, allow_unicode=True)
    except OSError as e:
      raise ReportError(f"Could not write report to {path}: {e}") from e
    log.info(f"Wrote run report to {path}")


def load_grade_results(path: str | os.PathLike) -> tuple[int, int, list[GradeResult]]:
  """
  Read a grades file (the layout written by RunReport.write).

  Returns (course_id, assignment_id, results). Entries without a `status`
  are treated as graded.
  """
  try:
    with open(path, "r", encoding="utf-8") as f:
      data = yaml.safe_load(f)
  except OSError as e:
    raise ReportError(f"Could not read grades file {path}: {e}") from e
  except yaml.YAMLError as e:
    raise ReportError(f"Could not parse grades file {path}: {e}") from e

  if not isinstance(data, dict):
    raise ReportError(f"Grades file {path} must contain a mapping.")
  try:
    course_id = int(data["course_id"])
    assignment_id = int(data["assignment_id"])
  except (KeyError, TypeError, ValueError) as e:
    raise ReportError(f"Grades file {path} needs integer course_id and assignment_id.") from e

  results: list[GradeResult] = []
  seen: set[int] = set()
  for index, item in enumerate(data.get("grades") or [], start=1):
    if not isinstance(item, dict):
      raise ReportError(f"Grade entry #{index} in {path} is not a mapping.")
    try:
      participant_id = int(item["participant_id"])
      status = GradeResult.Status(item.get("status", GradeResult.Status.GRADED.value))
      score = item.get("score")
      if status is GradeResult.Status.FAILED:
        result = GradeResult.failed(participant_id, str(item.get("diagnostic") or "grading failed"))
      else:
        result = GradeResult(
          participant_id,
          status,
          score=None if score is None else float(score),
          feedback=str(item.get("feedback") or ""),
        )
    except (KeyError, TypeError, ValueError) as e:
      raise ReportError(f"Grade entry #{index} in {path} is invalid: {e}") from e
    if participant_id in seen:
      raise ReportError(f"Participant {participant_id} appears twice in {path}.")
    seen.add(participant_id)
    results.append(result)

  return course_id, assignment_id, results
