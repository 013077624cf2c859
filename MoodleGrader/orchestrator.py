"""
The fetch -> match -> grade -> publish pipeline for one assignment.
"""
from __future__ import annotations

import collections
import enum
import logging
import queue
import re
import threading
import typing
from collections.abc import Callable, Sequence

from tqdm import tqdm

from moodle_interface.classes import (
  Assignment,
  GradeResult,
  Participant,
  PublishOutcome,
  SubmissionFile,
  SubmissionRecord,
)
from moodle_interface.exceptions import MoodleError
from moodle_interface.interfaces import LMSBackend
from MoodleGrader import matcher
from MoodleGrader.config import (
  DEFAULT_MAX_PUBLISH_WORKERS,
  DEFAULT_MAX_WORKERS,
  GraderConfig,
)
from MoodleGrader.exceptions import PipelineAborted, RunCancelled
from MoodleGrader.grader import LOCAL_RESOURCE, GraderModule
from MoodleGrader.report import RunReport

log = logging.getLogger(__name__)

SYSTEMIC_FAILURE_THRESHOLD = 3

T = typing.TypeVar("T")


class RunState(enum.Enum):
  IDLE = "idle"
  FETCHING = "fetching"
  MATCHING = "matching"
  GRADING = "grading"
  PUBLISHING = "publishing"
  COMPLETED = "completed"
  ABORTED = "aborted"
  CANCELLED = "cancelled"


class GradingOrchestrator:
  """
  Drives one run against an LMS backend.

  Fatal catalog errors while fetching raise PipelineAborted before any
  participant is touched. Everything after that is per participant: a
  failure is written into the RunReport and never stops the siblings.
  """

  def __init__(
      self,
      backend: LMSBackend,
      grader: GraderModule | None = None,
      *,
      max_workers: int = DEFAULT_MAX_WORKERS,
      max_publish_workers: int = DEFAULT_MAX_PUBLISH_WORKERS,
      publish_skipped: bool = True,
      skipped_score: float = 0.0,
      show_progress_bar: bool = False,
  ):
    if max_workers < 1 or max_publish_workers < 1:
      raise ValueError("Worker counts must be >= 1.")
    self.backend = backend
    self.grader = grader
    self.max_workers = max_workers
    self.max_publish_workers = max_publish_workers
    self.publish_skipped = publish_skipped
    self.skipped_score = skipped_score
    self.show_progress_bar = show_progress_bar

    self.state = RunState.IDLE
    self.history: list[RunState] = []
    self._cancel = threading.Event()
    self._local_failures: collections.Counter = collections.Counter()
    self._failure_lock = threading.Lock()

  @classmethod
  def from_config(cls, backend: LMSBackend, config: GraderConfig, **kwargs) -> GradingOrchestrator:
    return cls(
      backend,
      GraderModule(config),
      max_workers=config.max_workers,
      max_publish_workers=config.max_publish_workers,
      publish_skipped=config.publish_skipped,
      skipped_score=config.skipped_score,
      **kwargs
    )

  # -----------------------------
  # Public entry points
  # -----------------------------

  def run(self, course_id: int, assignment_id: int, *, publish: bool = True) -> RunReport:
    """Full pipeline. Returns the finalized report."""
    if self.grader is None:
      raise ValueError("A grader is required to run the grading pipeline.")

    assignment, roster, raw = self._fetch(course_id, assignment_id)
    report = RunReport(assignment, publish_enabled=publish)
    try:
      self._check_cancelled(report)
      self._match(roster, raw, report)
      self._check_cancelled(report)
      self._grade(assignment, report)
      self._check_cancelled(report)
      if publish:
        self._publish(assignment, report)
      else:
        log.info("Publishing disabled; grades stay local")
    except KeyboardInterrupt:
      stage = self.state.value
      self.cancel()
      self._transition(RunState.CANCELLED)
      raise RunCancelled(stage, report.finalize()) from None

    self._transition(RunState.COMPLETED)
    log.info(f"Run complete for \"{assignment.name}\": {report.summary_line()}")
    return report.finalize()

  def download(
      self,
      course_id: int,
      assignment_id: int
  ) -> tuple[Assignment, list[Participant], list[SubmissionRecord]]:
    """Fetching and Matching only."""
    assignment, roster, raw = self._fetch(course_id, assignment_id)
    self._transition(RunState.MATCHING)
    records = matcher.match(roster, raw)
    self._transition(RunState.COMPLETED)
    return assignment, roster, records

  def publish_results(
      self,
      course_id: int,
      assignment_id: int,
      results: Sequence[GradeResult]
  ) -> RunReport:
    """Publish previously computed results, e.g. from a grades file."""
    self._transition(RunState.FETCHING)
    try:
      assignment = self._get_gradeable_assignment(course_id, assignment_id)
      roster = {p.id: p for p in self.backend.list_participants(assignment_id)}
    except MoodleError as e:
      self._transition(RunState.ABORTED)
      raise PipelineAborted(RunState.FETCHING.value, str(e)) from e

    report = RunReport(assignment)
    strangers = []
    for result in results:
      participant = roster.get(result.participant_id)
      if participant is None:
        participant = Participant(result.participant_id, f"User {result.participant_id}",
                                  enrollment_status="unknown")
        strangers.append(result.participant_id)
      report.add_participant(participant)
      report.record_grade(result)
    for participant_id in strangers:
      log.warning(f"User {participant_id} is not a participant of assignment {assignment_id}")
      report.record_publish(PublishOutcome.rejected(participant_id, "not a participant of this assignment"))

    try:
      self._publish(assignment, report)
    except KeyboardInterrupt:
      self.cancel()
      self._transition(RunState.CANCELLED)
      raise RunCancelled(RunState.PUBLISHING.value, report.finalize()) from None
    self._transition(RunState.COMPLETED)
    return report.finalize()

  def cancel(self) -> None:
    """Stop taking new work and kill running graders. Published grades stay."""
    if self._cancel.is_set():
      return
    log.warning("Cancelling run")
    self._cancel.set()
    if self.grader is not None:
      self.grader.terminate_all()

  @property
  def cancelled(self) -> bool:
    return self._cancel.is_set()

  # -----------------------------
  # Stages
  # -----------------------------

  def _transition(self, state: RunState) -> None:
    log.debug(f"Run state: {self.state.value} -> {state.value}")
    self.state = state
    self.history.append(state)

  def _check_cancelled(self, report: RunReport | None = None) -> None:
    if not self._cancel.is_set():
      return
    stage = self.state.value
    self._transition(RunState.CANCELLED)
    raise RunCancelled(stage, report.finalize() if report is not None else None)

  def _get_gradeable_assignment(self, course_id: int, assignment_id: int) -> Assignment:
    assignment = self.backend.get_assignment(course_id, assignment_id)
    if assignment.max_grade <= 0:
      self._transition(RunState.ABORTED)
      raise PipelineAborted(
        RunState.FETCHING.value,
        f"assignment {assignment_id} has no numeric maximum grade (scale grading is not supported)"
      )
    return assignment

  def _fetch(
      self,
      course_id: int,
      assignment_id: int
  ) -> tuple[Assignment, list[Participant], dict[int, list[SubmissionFile]]]:
    self._transition(RunState.FETCHING)
    try:
      assignment = self._get_gradeable_assignment(course_id, assignment_id)
      roster = self.backend.list_participants(assignment_id)
      raw = self.backend.fetch_submissions(assignment_id)
    except MoodleError as e:
      log.error(f"Could not fetch assignment {assignment_id} of course {course_id}: {e}")
      self._transition(RunState.ABORTED)
      raise PipelineAborted(RunState.FETCHING.value, str(e)) from e

    if not roster:
      log.warning(f"Assignment \"{assignment.name}\" has no participants")
    log.info(
      f"Fetched \"{assignment.name}\": {len(roster)} participants, {len(raw)} with submitted files"
    )
    return assignment, roster, raw

  def _match(
      self,
      roster: Sequence[Participant],
      raw: dict[int, list[SubmissionFile]],
      report: RunReport
  ) -> list[SubmissionRecord]:
    self._transition(RunState.MATCHING)
    records = matcher.match(roster, raw)
    participants = {p.id: p for p in roster}
    for record in records:
      report.add_participant(participants[record.participant_id])
      report.record_submission(record)
    return records

  def _skipped_result(self, assignment: Assignment, record: SubmissionRecord) -> GradeResult:
    if record.status is SubmissionRecord.Status.MISSING:
      feedback = "No submission was received."
    else:
      feedback = f"Your submission could not be graded: {record.diagnostic}"
    return GradeResult.skipped(
      record.participant_id,
      score=assignment.clamp(self.skipped_score),
      feedback=feedback,
    )

  def _note_local_failure(self, diagnostic: str) -> None:
    # strip per-participant paths so identical failures share a key
    key = re.sub(r"'[^']*'", "'...'", diagnostic)
    with self._failure_lock:
      self._local_failures[key] += 1
      count = self._local_failures[key]
    if count == SYSTEMIC_FAILURE_THRESHOLD:
      log.error(
        f"The same local failure has now hit {count} participants; "
        f"this is likely a systemic problem (disk, permissions, grader command): {key}"
      )

  def _grade(self, assignment: Assignment, report: RunReport) -> None:
    self._transition(RunState.GRADING)
    gradeable = []
    for entry in report.entries():
      record = entry.submission
      if record.gradeable:
        gradeable.append(record)
      else:
        report.record_grade(self._skipped_result(assignment, record))

    log.info(f"Grading {len(gradeable)} submissions with up to {self.max_workers} workers")

    def grade_one(record: SubmissionRecord) -> None:
      result = self.grader.grade(assignment, record)
      if result.status is GradeResult.Status.FAILED and (result.diagnostic or "").startswith(LOCAL_RESOURCE):
        self._note_local_failure(result.diagnostic)
      report.record_grade(result)

    def on_error(record: SubmissionRecord, exc: Exception) -> None:
      report.record_grade(GradeResult.failed(record.participant_id, f"internal error: {exc}"))

    self._run_pool(gradeable, grade_one, on_error, max_workers=self.max_workers, label="grading")

  def _publish(self, assignment: Assignment, report: RunReport) -> None:
    self._transition(RunState.PUBLISHING)
    targets = []
    for entry in report.entries():
      grade = entry.grade
      if grade is None or entry.publish is not None:
        continue
      participant_id = grade.participant_id
      if grade.status is GradeResult.Status.FAILED:
        report.record_publish(
          PublishOutcome.not_attempted(participant_id, "grading failed; incomplete grades are never published"))
      elif grade.status is GradeResult.Status.SKIPPED and not self.publish_skipped:
        report.record_publish(
          PublishOutcome.not_attempted(participant_id, "publishing skipped results is disabled"))
      elif grade.score is None:
        report.record_publish(PublishOutcome.not_attempted(participant_id, "no score to publish"))
      else:
        targets.append(grade)

    log.info(f"Publishing {len(targets)} grades with up to {self.max_publish_workers} workers")

    def publish_one(result: GradeResult) -> None:
      report.record_publish(self.backend.publish_grade(assignment, result.participant_id, result))

    def on_error(result: GradeResult, exc: Exception) -> None:
      report.record_publish(PublishOutcome.rejected(result.participant_id, f"internal error: {exc}"))

    self._run_pool(targets, publish_one, on_error, max_workers=self.max_publish_workers, label="publishing")

  # -----------------------------
  # Worker pool
  # -----------------------------

  def _run_pool(
      self,
      items: Sequence[T],
      func: Callable[[T], None],
      on_error: Callable[[T, Exception], None],
      *,
      max_workers: int,
      label: str
  ) -> None:
    if not items:
      return

    worker_count = max(1, min(max_workers, len(items)))
    work: queue.Queue = queue.Queue()
    for item in items:
      work.put(item)
    for _ in range(worker_count):
      work.put(None)

    progress = tqdm(total=len(items), desc=label, unit="student", leave=True,
                    disable=not self.show_progress_bar)

    def worker() -> None:
      while True:
        item = work.get()
        if item is None:
          break
        if self._cancel.is_set():
          continue
        try:
          func(item)
        except Exception as e:
          log.exception(f"Unexpected error while {label}: {e}")
          try:
            on_error(item, e)
          except Exception as nested:
            log.error(f"Could not record failure while {label}: {nested}")
        progress.update(1)

    threads = [
      threading.Thread(target=worker, name=f"{label}-{i}", daemon=True)
      for i in range(worker_count)
    ]
    for thread in threads:
      thread.start()
    try:
      for thread in threads:
        while thread.is_alive():
          thread.join(timeout=0.5)
    except KeyboardInterrupt:
      log.warning(f"Interrupted while {label}")
      self.cancel()
      for thread in threads:
        thread.join()
      raise
    finally:
      progress.close()
