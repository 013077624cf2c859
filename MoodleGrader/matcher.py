"""
Reconcile downloaded submission files against the assignment roster.
"""
from __future__ import annotations

import io
import logging
import posixpath
import tarfile
import zipfile
import zlib
from collections.abc import Mapping, Sequence

from moodle_interface.classes import Participant, SubmissionFile, SubmissionRecord

log = logging.getLogger(__name__)

TAR_SUFFIXES = (".tar", ".tar.gz", ".tgz", ".tar.bz2", ".tar.xz")

# whatever a broken or hostile archive can raise while being read
ARCHIVE_ERRORS = (
  zipfile.BadZipFile,
  zipfile.LargeZipFile,
  tarfile.TarError,
  zlib.error,
  OSError,
  EOFError,
  RuntimeError,
  NotImplementedError,
  ValueError,
)


def _unsafe_name_reason(submission_file: SubmissionFile) -> str | None:
  if not submission_file.filename.strip():
    return "file has an empty name"
  fullpath = submission_file.fullpath
  if "\x00" in fullpath:
    return f"file name {fullpath!r} contains a NUL byte"
  if fullpath.startswith("/") or posixpath.isabs(fullpath):
    return f"file path {fullpath!r} is absolute"
  if ".." in fullpath.replace("\\", "/").split("/"):
    return f"file path {fullpath!r} escapes the submission directory"
  return None


def _archive_problem(submission_file: SubmissionFile) -> str | None:
  name = submission_file.filename.lower()
  content = submission_file.content or b""
  if name.endswith(".zip"):
    try:
      with zipfile.ZipFile(io.BytesIO(content)) as archive:
        bad_member = archive.testzip()
    except ARCHIVE_ERRORS as e:
      return f"archive {submission_file.fullpath} cannot be opened: {e}"
    if bad_member is not None:
      return f"archive {submission_file.fullpath} has a corrupt member: {bad_member}"
  elif name.endswith(TAR_SUFFIXES):
    try:
      with tarfile.open(fileobj=io.BytesIO(content)) as archive:
        archive.getmembers()
    except ARCHIVE_ERRORS as e:
      return f"archive {submission_file.fullpath} cannot be opened: {e}"
  return None


def check_files(files: Sequence[SubmissionFile]) -> str | None:
  """Return a diagnostic for the first structural problem found, else None."""
  if not files:
    return "submission contains no files"

  seen_paths: set[str] = set()
  for submission_file in files:
    if submission_file.error:
      return f"download of {submission_file.fullpath} failed: {submission_file.error}"
    reason = _unsafe_name_reason(submission_file)
    if reason:
      return reason
    if submission_file.fullpath in seen_paths:
      return f"duplicate file path {submission_file.fullpath}"
    seen_paths.add(submission_file.fullpath)
    if not submission_file.content:
      return f"file {submission_file.fullpath} is empty (0 bytes)"
    reason = _archive_problem(submission_file)
    if reason:
      return reason
  return None


def match(
    roster: Sequence[Participant],
    raw: Mapping[int, Sequence[SubmissionFile]]
) -> list[SubmissionRecord]:
  """
  Produce exactly one SubmissionRecord per roster participant, in roster order.

  A participant absent from `raw` is MISSING; one whose files fail a
  structural check is MALFORMED with a diagnostic; everyone else is PRESENT.
  Entries in `raw` for people outside the roster are ignored.
  """
  records: list[SubmissionRecord] = []
  seen: set[int] = set()

  for participant in roster:
    if participant.id in seen:
      log.warning(f"Duplicate roster entry for {participant}; keeping the first")
      continue
    seen.add(participant.id)

    if participant.id not in raw:
      records.append(SubmissionRecord(participant.id, SubmissionRecord.Status.MISSING))
      continue

    files = tuple(raw[participant.id])
    timestamps = [f.timemodified for f in files if f.timemodified is not None]
    submitted_at = max(timestamps) if timestamps else None

    diagnostic = check_files(files)
    if diagnostic is not None:
      log.warning(f"Malformed submission from {participant}: {diagnostic}")
      status = SubmissionRecord.Status.MALFORMED
    else:
      status = SubmissionRecord.Status.PRESENT

    records.append(
      SubmissionRecord(
        participant.id,
        status,
        files=files,
        submitted_at=submitted_at,
        diagnostic=diagnostic,
      )
    )

  strays = sorted(set(raw) - seen)
  if strays:
    log.info(f"Ignoring submissions from {len(strays)} users not on the roster: {strays}")

  return records
