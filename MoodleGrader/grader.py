"""
Process contract for external grader modules.

Each submission is graded by a fresh process started as

    <command...> <workdir>/assignment.yaml <workdir>/submission

with `<workdir>` as its working directory. `submission/` holds the submitted
files at their submitted relative paths and `assignment.yaml` describes the
assignment plus any free-form `options` from the grader configuration. The
process must exit 0 and print a YAML (or JSON) mapping on stdout:

    score: 7.5
    feedback: |
      All tests passed except `reverse []`.

Anything else is a grading failure for that one participant.
"""
from __future__ import annotations

import logging
import math
import os
import shutil
import signal
import subprocess
import tempfile
import threading
from pathlib import Path

import yaml

from moodle_interface.classes import Assignment, GradeResult, SubmissionRecord
from MoodleGrader.config import GraderConfig

log = logging.getLogger(__name__)

ASSIGNMENT_FILE = "assignment.yaml"
SUBMISSION_DIR = "submission"
DIAGNOSTIC_TAIL_CHARS = 2000

TIMEOUT = "timeout"
LOCAL_RESOURCE = "local-resource"
MALFORMED_OUTPUT = "malformed output"
CANCELLED = "cancelled"


def _tail(text: str, limit: int = DIAGNOSTIC_TAIL_CHARS) -> str:
  text = text.strip()
  if len(text) <= limit:
    return text
  return "..." + text[-limit:]


def parse_grader_output(stdout: str, assignment: Assignment, participant_id: int) -> GradeResult:
  """Turn a grader's stdout into a graded or failed GradeResult."""
  try:
    payload = yaml.safe_load(stdout) if stdout.strip() else None
  except yaml.YAMLError as e:
    return GradeResult.failed(participant_id, f"{MALFORMED_OUTPUT}: {e}")

  if not isinstance(payload, dict) or "score" not in payload:
    return GradeResult.failed(
      participant_id,
      f"{MALFORMED_OUTPUT}: expected a mapping with a 'score' key, got: {_tail(stdout, 200)!r}"
    )

  score = payload["score"]
  if isinstance(score, bool) or not isinstance(score, (int, float)):
    return GradeResult.failed(participant_id, f"{MALFORMED_OUTPUT}: score {score!r} is not a number")
  if not math.isfinite(score):
    return GradeResult.failed(participant_id, f"{MALFORMED_OUTPUT}: score {score!r} is not finite")

  feedback = payload.get("feedback", "")
  if feedback is None:
    feedback = ""
  if not isinstance(feedback, str):
    return GradeResult.failed(participant_id, f"{MALFORMED_OUTPUT}: feedback must be text")

  clamped = assignment.clamp(score)
  if clamped != score:
    log.warning(
      f"Score {score} for {participant_id} is outside [0, {assignment.max_grade}]; using {clamped}"
    )
  return GradeResult.graded(participant_id, clamped, feedback)


class GraderModule:
  """
  Runs the configured grader command once per submission.

  Invocations share no state: every call stages into its own temporary
  directory, and running processes are tracked only so that
  `terminate_all` can kill them when a run is cancelled.
  """

  def __init__(self, config: GraderConfig):
    self.config = config
    self._processes: dict[int, subprocess.Popen] = {}
    self._lock = threading.Lock()
    self._terminated = threading.Event()

  def grade(self, assignment: Assignment, record: SubmissionRecord) -> GradeResult:
    if not record.gradeable:
      raise ValueError(
        f"Submission for {record.participant_id} is {record.status.value} and cannot be graded."
      )
    participant_id = record.participant_id
    if self._terminated.is_set():
      return GradeResult.failed(participant_id, CANCELLED)

    try:
      workdir = self._stage(assignment, record)
    except OSError as e:
      log.error(f"Could not stage submission for {participant_id}: {e}")
      return GradeResult.failed(participant_id, f"{LOCAL_RESOURCE}: could not stage submission: {e}")

    try:
      return self._invoke(assignment, participant_id, workdir)
    finally:
      if self.config.keep_workdirs:
        log.info(f"Keeping working directory for {participant_id}: {workdir}")
      else:
        shutil.rmtree(workdir, ignore_errors=True)

  def _stage(self, assignment: Assignment, record: SubmissionRecord) -> Path:
    workdir = Path(tempfile.mkdtemp(prefix=f"moodle_grader_{assignment.id}_{record.participant_id}_"))
    try:
      submission_dir = workdir / SUBMISSION_DIR
      submission_dir.mkdir()
      for submission_file in record.files:
        destination = submission_dir / submission_file.fullpath
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(submission_file.content or b"")

      description = {
        "assignment": {
          "id": assignment.id,
          "name": assignment.name,
          "course_id": assignment.course_id,
          "max_grade": assignment.max_grade,
          "due_date": assignment.due_date.isoformat() if assignment.due_date else None,
        },
        "participant_id": record.participant_id,
        "submitted_at": record.submitted_at.isoformat() if record.submitted_at else None,
        "files": [f.fullpath for f in record.files],
        "options": dict(self.config.options),
      }
      with open(workdir / ASSIGNMENT_FILE, "w", encoding="utf-8") as f:
        yaml.safe_dump(description, f, sort_keys=False)
    except OSError:
      shutil.rmtree(workdir, ignore_errors=True)
      raise
    return workdir

  def _environment(self, assignment: Assignment, participant_id: int) -> dict[str, str]:
    env = os.environ.copy()
    env.update({
      "MOODLE_GRADER_ASSIGNMENT_ID": str(assignment.id),
      "MOODLE_GRADER_PARTICIPANT_ID": str(participant_id),
      "MOODLE_GRADER_MAX_GRADE": str(assignment.max_grade),
    })
    # Credentials never reach the grader
    env.pop("MOODLE_PASSWORD", None)
    return env

  def _invoke(self, assignment: Assignment, participant_id: int, workdir: Path) -> GradeResult:
    args = [
      *self.config.command,
      str(workdir / ASSIGNMENT_FILE),
      str(workdir / SUBMISSION_DIR),
    ]
    log.debug(f"Running grader for {participant_id}: {args}")
    try:
      p = subprocess.Popen(
        args,
        cwd=workdir,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        env=self._environment(assignment, participant_id),
        start_new_session=(os.name == "posix"),
      )
    except OSError as e:
      log.error(f"Could not start grader for {participant_id}: {e}")
      return GradeResult.failed(participant_id, f"{LOCAL_RESOURCE}: could not start grader: {e}")

    with self._lock:
      self._processes[participant_id] = p
      # terminate_all may have run between staging and Popen
      if self._terminated.is_set():
        self._kill(p)
    try:
      stdout, stderr = p.communicate(timeout=self.config.timeout_seconds)
    except subprocess.TimeoutExpired:
      log.error(f"Grader timed out after {self.config.timeout_seconds}s for {participant_id}")
      self._kill(p)
      p.communicate()
      return GradeResult.failed(
        participant_id, f"{TIMEOUT}: grader exceeded {self.config.timeout_seconds:g}s")
    finally:
      with self._lock:
        self._processes.pop(participant_id, None)

    stdout_text = stdout.decode("utf-8", errors="replace")
    stderr_text = stderr.decode("utf-8", errors="replace")

    if self._terminated.is_set() and p.returncode != 0:
      return GradeResult.failed(participant_id, CANCELLED)
    if p.returncode != 0:
      log.warning(f"Grader exited with status {p.returncode} for {participant_id}")
      return GradeResult.failed(
        participant_id,
        f"grader exited with status {p.returncode}: {_tail(stderr_text or stdout_text)}"
      )
    if stderr_text.strip():
      log.debug(f"Grader stderr for {participant_id}: {_tail(stderr_text, 500)}")

    return parse_grader_output(stdout_text, assignment, participant_id)

  @staticmethod
  def _kill(p: subprocess.Popen) -> None:
    if p.poll() is not None:
      return
    try:
      if os.name == "posix":
        # graders commonly spawn compilers; take the whole process group down
        os.killpg(p.pid, signal.SIGKILL)
      else:
        p.kill()
    except ProcessLookupError:
      pass

  def terminate_all(self) -> int:
    """Kill every in-flight grader process and refuse new invocations."""
    self._terminated.set()
    with self._lock:
      processes = list(self._processes.values())
    for p in processes:
      self._kill(p)
    if processes:
      log.warning(f"Terminated {len(processes)} running grader processes")
    return len(processes)
