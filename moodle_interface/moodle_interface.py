#!/usr/bin/env python
from __future__ import annotations

import logging
import os
import random
import threading
import time
import typing
import urllib.parse

import dotenv
import requests

from .classes import Assignment, Course, Participant, SubmissionFile
from .exceptions import LoginError, MoodleAPIError, NotFound, RemoteUnavailable

log = logging.getLogger(__name__)

LOGIN_PATH = "login/token.php"
LOGIN_SERVICE = "moodle_mobile_app"
WS_PATH = "webservice/rest/server.php"
LOGIN_ERROR_CODES = {"invalidtoken", "accessexception", "invalidlogin"}

REQUEST_TIMEOUT_SECONDS = 30
MAX_DOWNLOAD_BYTES = 50 * 1024 * 1024
DOWNLOAD_CHUNK_BYTES = 64 * 1024
MAX_RETRIES = 5
RETRY_BACKOFF_BASE = 1.0
RETRY_BACKOFF_MAX = 10.0
RETRY_BACKOFF_JITTER_RATIO = 0.2
RETRY_TOTAL_TIMEOUT_SECONDS = 120.0

T = typing.TypeVar("T")


def _response_status(exc: Exception) -> int | None:
  status = getattr(exc, "status_code", None)
  if status is not None:
    return status
  response = getattr(exc, "response", None)
  return getattr(response, "status_code", None)


def _is_retryable_exception(exc: Exception) -> bool:
  if isinstance(exc, (requests.exceptions.ConnectionError, requests.exceptions.Timeout)):
    return True
  status = _response_status(exc)
  if status is None:
    return False
  if status == 429:
    return True
  if 500 <= status <= 599:
    return True
  return False


def _compute_retry_delay_seconds(
    attempt: int,
    *,
    retry_backoff_base: float,
    retry_backoff_max: float,
    retry_backoff_jitter_ratio: float,
) -> float:
  base_delay = min(retry_backoff_base * (2 ** (attempt - 1)),
                   retry_backoff_max)
  if retry_backoff_jitter_ratio <= 0:
    return max(0.0, base_delay)

  jitter_window = max(0.0, base_delay * retry_backoff_jitter_ratio)
  jittered = base_delay + random.uniform(-jitter_window, jitter_window)
  return max(0.0, min(jittered, retry_backoff_max))


def _submission_files(submission: dict) -> list[dict]:
  """Pull the file list out of the `file` plugin's `submission_files` area."""
  for plugin in submission.get("plugins") or []:
    if plugin.get("type") != "file":
      continue
    for filearea in plugin.get("fileareas") or []:
      if filearea.get("area") == "submission_files":
        return list(filearea.get("files") or [])
  return []


class MoodleInterface:
  def __init__(
      self,
      *,
      env_path: str | None = None,
      base_url: str | None = None,
      username: str | None = None,
      password: str | None = None,
      token: str | None = None,
      timeout: float = REQUEST_TIMEOUT_SECONDS,
      max_retries: int = MAX_RETRIES,
      retry_backoff_base: float = RETRY_BACKOFF_BASE,
      retry_backoff_max: float = RETRY_BACKOFF_MAX,
      retry_total_timeout_seconds: float | None = RETRY_TOTAL_TIMEOUT_SECONDS,
  ):
    if env_path:
      dotenv.load_dotenv(env_path)

    self.base_url = base_url or os.environ.get("MOODLE_BASE_URL")
    self.username = username or os.environ.get("MOODLE_USERNAME")
    password = password or os.environ.get("MOODLE_PASSWORD")

    if not self.base_url:
      raise ValueError(
        "Moodle base URL is missing. "
        "Pass --base-url or set MOODLE_BASE_URL in your .env or environment variables."
      )
    if not self.base_url.endswith("/"):
      self.base_url += "/"

    self.timeout = timeout
    self.max_retries = max_retries
    self.retry_backoff_base = retry_backoff_base
    self.retry_backoff_max = retry_backoff_max
    self.retry_total_timeout_seconds = retry_total_timeout_seconds
    self._local = threading.local()

    if token:
      self.token = token
    else:
      if not self.username or not password:
        raise ValueError(
          "Moodle credentials are missing. "
          "Set MOODLE_USERNAME and MOODLE_PASSWORD in your .env or environment variables."
        )
      self.token = self.login(self.username, password)

  # -----------------------------
  # Low-level HTTP helpers
  # -----------------------------

  @property
  def session(self) -> requests.Session:
    # requests sessions are not safe to share across worker threads
    session = getattr(self._local, "session", None)
    if session is None:
      session = requests.Session()
      session.headers.update({"Accept": "application/json"})
      self._local.session = session
    return session

  def _url(self, path: str) -> str:
    return urllib.parse.urljoin(self.base_url, path)

  def _call_with_retry(self, label: str, func: typing.Callable[[], T]) -> T:
    started_at = time.monotonic()
    deadline = None
    if (self.retry_total_timeout_seconds is not None
        and self.retry_total_timeout_seconds > 0):
      deadline = started_at + self.retry_total_timeout_seconds

    for attempt in range(1, self.max_retries + 1):
      try:
        return func()
      except requests.exceptions.RequestException as e:
        status = _response_status(e)
        retryable = _is_retryable_exception(e)
        error_type = "transient" if retryable else "permanent"
        log.warning(
          f"Encountered {error_type} Moodle error for {label} "
          f"(status={status}, attempt={attempt}/{self.max_retries}): {e}"
        )
        if not retryable:
          raise RemoteUnavailable(f"{label} failed: {e}") from e
        if attempt >= self.max_retries:
          raise RemoteUnavailable(
            f"{label} failed after {self.max_retries} attempts: {e}") from e

        sleep_s = _compute_retry_delay_seconds(
          attempt,
          retry_backoff_base=self.retry_backoff_base,
          retry_backoff_max=self.retry_backoff_max,
          retry_backoff_jitter_ratio=RETRY_BACKOFF_JITTER_RATIO,
        )
        if deadline is not None:
          remaining = deadline - time.monotonic()
          if remaining <= 0:
            elapsed = time.monotonic() - started_at
            raise RemoteUnavailable(
              f"{label} exceeded retry duration ({elapsed:.1f}s)") from e
          sleep_s = min(sleep_s, remaining)

        log.warning(f"Retrying {label} in {sleep_s:.2f}s (attempt {attempt}/{self.max_retries})")
        if sleep_s > 0:
          time.sleep(sleep_s)

    raise RemoteUnavailable(f"{label} failed: no attempts were made")

  def _post_json(self, url: str, data: dict, label: str) -> typing.Any:
    def do_post():
      response = self.session.post(url, data=data, timeout=self.timeout)
      response.raise_for_status()
      return response

    response = self._call_with_retry(label, do_post)
    if not response.text.strip():
      return None
    try:
      return response.json()
    except ValueError as e:
      raise MoodleAPIError("invalidresponse", response.text[:200], wsfunction=label) from e

  def login(self, username: str, password: str) -> str:
    payload = self._post_json(
      self._url(f"{LOGIN_PATH}?service={LOGIN_SERVICE}"),
      {"username": username, "password": password},
      "login",
    )
    token = (payload or {}).get("token")
    if not token:
      raise LoginError((payload or {}).get("error") or "no token returned")
    log.debug(f"Logged in to {self.base_url} as {username}")
    return token

  def call(self, wsfunction: str, **params) -> typing.Any:
    """
    Invoke a Moodle web-service function and return its decoded JSON.

    Moodle signals failures with a 200 response carrying `exception`,
    `errorcode` and `message`; those are raised as MoodleAPIError (or
    LoginError for token problems).
    """
    data = dict(params)
    data["wsfunction"] = wsfunction
    data["wstoken"] = self.token
    payload = self._post_json(
      self._url(f"{WS_PATH}?moodlewsrestformat=json"), data, wsfunction)

    if isinstance(payload, dict) and "exception" in payload:
      errorcode = str(payload.get("errorcode") or "unknown")
      message = str(payload.get("message") or "")
      if errorcode in LOGIN_ERROR_CODES:
        raise LoginError(message or errorcode)
      raise MoodleAPIError(errorcode, message, wsfunction=wsfunction)
    return payload

  # -----------------------------
  # High-level API methods
  # -----------------------------

  def get_course(self, course_id: int) -> Course:
    payload = self.call("mod_assign_get_assignments", **{"courseids[]": str(course_id)})
    for course in (payload or {}).get("courses") or []:
      if int(course.get("id", -1)) == course_id:
        return Course.from_json(course)
    raise NotFound("course", course_id)

  def get_participants(self, assignment_id: int) -> list[Participant]:
    payload = self.call(
      "mod_assign_list_participants",
      assignid=str(assignment_id),
      groupid="0",
      filter="",
    )
    return [Participant.from_json(p) for p in payload or []]

  def get_submissions(self, assignment_id: int) -> list[dict]:
    payload = self.call("mod_assign_get_submissions", **{"assignmentids[]": str(assignment_id)})
    for assignment_submissions in (payload or {}).get("assignments") or []:
      if int(assignment_submissions.get("assignmentid", -1)) == assignment_id:
        return list(assignment_submissions.get("submissions") or [])
    raise NotFound("assignment", assignment_id)

  def get_submission_files(self, assignment_id: int) -> dict[int, list[SubmissionFile]]:
    """Map user id -> file manifests (not yet downloaded)."""
    manifests: dict[int, list[SubmissionFile]] = {}
    for submission in self.get_submissions(assignment_id):
      user_id = int(submission.get("userid") or 0)
      if user_id == 0:
        # group submissions are reported under user 0
        log.debug("Skipping group submission without a user id")
        continue
      files = [SubmissionFile.from_json(f) for f in _submission_files(submission)]
      if not files:
        log.debug(f"No submitted files for user {user_id} (status={submission.get('status')})")
        continue
      manifests[user_id] = files
    return manifests

  def download_file(self, submission_file: SubmissionFile) -> bytes:
    if not submission_file.fileurl:
      raise ValueError(f"File '{submission_file.fullpath}' has no download URL.")

    def do_download():
      with self.session.post(submission_file.fileurl, data={"token": self.token},
                             timeout=self.timeout, stream=True) as response:
        response.raise_for_status()
        chunks = []
        total_bytes = 0
        for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_BYTES):
          total_bytes += len(chunk)
          if total_bytes > MAX_DOWNLOAD_BYTES:
            raise ValueError(
              f"File '{submission_file.fullpath}' exceeds max size of {MAX_DOWNLOAD_BYTES} bytes."
            )
          chunks.append(chunk)
        return b"".join(chunks)

    return self._call_with_retry(f"download {submission_file.fullpath}", do_download)

  def save_grade(self, assignment: Assignment, user_id: int, grade: float,
                 feedback: str | None = None) -> None:
    params = {
      "assignmentid": str(assignment.id),
      "userid": str(user_id),
      "grade": str(assignment.clamp(grade)),
      "attemptnumber": "-1",
      "addattempt": "0",
      "workflowstate": "",
      "applytoall": "0",
      "plugindata[assignfeedbackcomments_editor][text]": (feedback or "").strip(),
      "plugindata[assignfeedbackcomments_editor][format]": "2",
    }
    log.debug(f"Saving grade {params['grade']} for user {user_id} on assignment {assignment.id}")
    self.call("mod_assign_save_grade", **params)
