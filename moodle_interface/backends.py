from __future__ import annotations

import dataclasses
import logging

from .classes import Assignment, GradeResult, Participant, PublishOutcome, SubmissionFile
from .exceptions import MoodleAPIError, MoodleError, NotFound
from .interfaces import LMSBackend
from .moodle_interface import MoodleInterface

log = logging.getLogger(__name__)

# errorcodes Moodle uses when an assignment / course id does not resolve
NOT_FOUND_ERROR_CODES = {"invalidrecord", "invalidrecordunknown", "invalidcoursemodule", "invalidparameter"}


class MoodleBackend(LMSBackend):
  """
  Catalog façade over a MoodleInterface session.

  The listing calls let fatal errors (RemoteUnavailable, LoginError,
  NotFound) propagate; publish_grade never raises for remote failures and
  reports them as a rejected PublishOutcome instead.
  """

  def __init__(self, interface: MoodleInterface):
    self._interface = interface

  @classmethod
  def connect(cls, **kwargs) -> MoodleBackend:
    return cls(MoodleInterface(**kwargs))

  def list_assignments(self, course_id: int) -> list[Assignment]:
    course = self._interface.get_course(course_id)
    if not course.assignments:
      log.warning(f"Course \"{course.fullname}\" ({course_id}) has no assignments")
    return list(course.assignments)

  def get_assignment(self, course_id: int, assignment_id: int) -> Assignment:
    return self._interface.get_course(course_id).get_assignment(assignment_id)

  def list_participants(self, assignment_id: int) -> list[Participant]:
    try:
      return self._interface.get_participants(assignment_id)
    except MoodleAPIError as e:
      if e.errorcode in NOT_FOUND_ERROR_CODES:
        raise NotFound("assignment", assignment_id) from e
      raise

  def fetch_submissions(self, assignment_id: int) -> dict[int, list[SubmissionFile]]:
    manifests = self._interface.get_submission_files(assignment_id)
    submissions: dict[int, list[SubmissionFile]] = {}
    for user_id, files in manifests.items():
      downloaded = []
      for submission_file in files:
        try:
          content = self._interface.download_file(submission_file)
          downloaded.append(dataclasses.replace(submission_file, content=content))
        except (MoodleError, ValueError) as e:
          log.warning(f"Could not download {submission_file.fullpath} for user {user_id}: {e}")
          downloaded.append(dataclasses.replace(submission_file, error=str(e)))
      submissions[user_id] = downloaded
    log.info(f"Fetched submissions for {len(submissions)} participants of assignment {assignment_id}")
    return submissions

  def publish_grade(
      self,
      assignment: Assignment,
      participant_id: int,
      result: GradeResult
  ) -> PublishOutcome:
    if result.status is GradeResult.Status.FAILED:
      raise ValueError(f"Refusing to publish a failed grading result for {participant_id}.")
    if result.score is None:
      raise ValueError(f"Result for {participant_id} has no score to publish.")
    try:
      self._interface.save_grade(assignment, participant_id, result.score, result.feedback)
    except MoodleError as e:
      log.error(f"Grade upload rejected for user {participant_id}: {e}")
      return PublishOutcome.rejected(participant_id, str(e))
    log.debug(f"Grade accepted for user {participant_id}")
    return PublishOutcome.accepted(participant_id)
