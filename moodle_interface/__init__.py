"""
Moodle web-service integration for MoodleGrader
"""

from .backends import MoodleBackend
from .classes import (
  Assignment,
  Course,
  GradeResult,
  Participant,
  PublishOutcome,
  SubmissionFile,
  SubmissionRecord,
)
from .exceptions import LoginError, MoodleAPIError, MoodleError, NotFound, RemoteUnavailable
from .interfaces import LMSBackend
from .moodle_interface import MoodleInterface

__all__ = [
  "Assignment",
  "Course",
  "GradeResult",
  "LMSBackend",
  "LoginError",
  "MoodleAPIError",
  "MoodleBackend",
  "MoodleError",
  "MoodleInterface",
  "NotFound",
  "Participant",
  "PublishOutcome",
  "RemoteUnavailable",
  "SubmissionFile",
  "SubmissionRecord",
]
