from __future__ import annotations


class MoodleError(Exception):
  """Base class for errors raised by moodle_interface."""


class MoodleAPIError(MoodleError):
  """Moodle answered a web-service call with an exception payload."""

  def __init__(self, errorcode: str, message: str, *, wsfunction: str | None = None):
    self.errorcode = errorcode
    self.message = message
    self.wsfunction = wsfunction
    where = f" ({wsfunction})" if wsfunction else ""
    super().__init__(f"Moodle error{where} :: {errorcode}: {message}")


class LoginError(MoodleError):
  """The credentials were refused or the token is no longer valid."""

  def __init__(self, message: str):
    self.message = message
    super().__init__(f"Login Error :: {message}")


class NotFound(MoodleError):

  def __init__(self, kind: str, object_id: int):
    self.kind = kind
    self.object_id = object_id
    super().__init__(f"{kind.capitalize()} (id: {object_id}) not found!")


class RemoteUnavailable(MoodleError):
  """The Moodle site could not be reached, even after retrying."""
