from __future__ import annotations

from typing import Protocol

from .classes import Assignment, GradeResult, Participant, PublishOutcome, SubmissionFile


class LMSBackend(Protocol):
  def list_assignments(self, course_id: int) -> list[Assignment]: ...
  def get_assignment(self, course_id: int, assignment_id: int) -> Assignment: ...
  def list_participants(self, assignment_id: int) -> list[Participant]: ...
  def fetch_submissions(self, assignment_id: int) -> dict[int, list[SubmissionFile]]: ...
  def publish_grade(
      self,
      assignment: Assignment,
      participant_id: int,
      result: GradeResult
  ) -> PublishOutcome: ...
