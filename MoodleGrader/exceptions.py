from __future__ import annotations


class MoodleGraderError(Exception):
  """User-facing error for CLI operations."""


class ConfigError(MoodleGraderError):
  """Raised when a grader configuration file is missing or invalid."""


class ReportError(MoodleGraderError):
  """Raised when a run report is written twice or read from a malformed file."""


class PipelineAborted(MoodleGraderError):
  """A catalog-level failure stopped the run before any participant was graded."""

  def __init__(self, stage: str, reason: str):
    self.stage = stage
    self.reason = reason
    super().__init__(f"Run aborted while {stage}: {reason}")


class RunCancelled(MoodleGraderError):
  """The run was cancelled; `report` holds whatever completed before that."""

  def __init__(self, stage: str, report=None):
    self.stage = stage
    self.report = report
    super().__init__(f"Run cancelled while {stage}")
