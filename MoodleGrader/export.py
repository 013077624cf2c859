from __future__ import annotations

import logging
import os
import posixpath
import re
import zipfile
from collections.abc import Sequence
from pathlib import Path

import yaml

from moodle_interface.classes import Assignment, Participant, SubmissionRecord

log = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.yaml"


def sanitize_filename(name: str) -> str:
  safe = re.sub(r"[^\w\-. ]", "_", name.replace("\x00", "")).strip().strip(".")
  safe = re.sub(r"\s+", "-", safe)
  return safe or "unnamed"


def participant_folder(participant: Participant) -> str:
  return f"{participant.id}_{sanitize_filename(participant.fullname)}"


def build_manifest(
    assignment: Assignment,
    participants: Sequence[Participant],
    records: Sequence[SubmissionRecord]
) -> dict:
  by_id = {p.id: p for p in participants}
  entries = []
  for record in records:
    participant = by_id[record.participant_id]
    entry = {
      "participant_id": participant.id,
      "name": participant.fullname,
      "email": participant.email,
      "folder": participant_folder(participant),
      "status": record.status.value,
      "submitted_at": record.submitted_at.isoformat() if record.submitted_at else None,
      "late_seconds": assignment.late_by(record.submitted_at),
      "files": [f.fullpath for f in record.files],
    }
    if record.diagnostic:
      entry["diagnostic"] = record.diagnostic
    entries.append(entry)
  return {
    "course_id": assignment.course_id,
    "assignment_id": assignment.id,
    "assignment_name": assignment.name,
    "max_grade": assignment.max_grade,
    "due_date": assignment.due_date.isoformat() if assignment.due_date else None,
    "submissions": entries,
  }


def _exportable_files(record: SubmissionRecord):
  # Unsafe or failed files of malformed submissions are listed in the manifest only
  for submission_file in record.files:
    if submission_file.content is None or submission_file.error:
      continue
    relative = posixpath.normpath(submission_file.fullpath)
    if relative.startswith(("/", "..")) or "\x00" in relative:
      log.warning(f"Not exporting unsafe path {submission_file.fullpath!r}")
      continue
    yield relative, submission_file.content


def write_submissions(
    assignment: Assignment,
    participants: Sequence[Participant],
    records: Sequence[SubmissionRecord],
    output: str | os.PathLike
) -> Path:
  """
  Write every participant's files under `<id>_<name>/` plus a manifest.

  An output path ending in `.zip` produces a zip archive, anything else a
  directory.
  """
  output = Path(output)
  by_id = {p.id: p for p in participants}
  manifest = yaml.safe_dump(build_manifest(assignment, participants, records),
                            sort_keys=False, allow_unicode=True)
  written = 0

  if output.suffix.lower() == ".zip":
    output.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(output, "w", compression=zipfile.ZIP_DEFLATED) as archive:
      archive.writestr(MANIFEST_NAME, manifest)
      for record in records:
        folder = participant_folder(by_id[record.participant_id])
        for relative, content in _exportable_files(record):
          archive.writestr(posixpath.join(folder, relative), content)
          written += 1
  else:
    output.mkdir(parents=True, exist_ok=True)
    (output / MANIFEST_NAME).write_text(manifest, encoding="utf-8")
    for record in records:
      folder = output / participant_folder(by_id[record.participant_id])
      for relative, content in _exportable_files(record):
        destination = folder / relative
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(content)
        written += 1

  log.info(f"Wrote {written} files for {len(records)} participants to {output}")
  return output
