from __future__ import annotations

import dataclasses
import logging
import os
import shlex
import typing

import yaml

from MoodleGrader.exceptions import ConfigError

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0
DEFAULT_MAX_WORKERS = 4
DEFAULT_MAX_PUBLISH_WORKERS = 4


@dataclasses.dataclass(frozen=True)
class GraderConfig:
  """
  How to run the external grader and how to schedule a run.

  Example YAML:

    command: ["runhaskell", "Grader.hs"]
    timeout_seconds: 120
    max_workers: 4
    max_publish_workers: 2
    publish_skipped: true
    skipped_score: 0
    options:
      tests: tests/Spec.hs
  """
  command: tuple[str, ...]
  timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
  max_workers: int = DEFAULT_MAX_WORKERS
  max_publish_workers: int = DEFAULT_MAX_PUBLISH_WORKERS
  publish_skipped: bool = True
  skipped_score: float = 0.0
  keep_workdirs: bool = False
  options: dict[str, typing.Any] = dataclasses.field(default_factory=dict)

  def __post_init__(self):
    if not self.command:
      raise ConfigError("Grader command must not be empty.")
    if self.timeout_seconds <= 0:
      raise ConfigError("timeout_seconds must be positive.")
    if self.max_workers < 1:
      raise ConfigError("max_workers must be >= 1.")
    if self.max_publish_workers < 1:
      raise ConfigError("max_publish_workers must be >= 1.")
    if self.skipped_score < 0:
      raise ConfigError("skipped_score must be non-negative.")

  @staticmethod
  def _parse_command(value) -> tuple[str, ...]:
    if isinstance(value, str):
      return tuple(shlex.split(value))
    if isinstance(value, (list, tuple)) and all(isinstance(v, (str, int, float)) for v in value):
      return tuple(str(v) for v in value)
    raise ConfigError(f"command must be a string or a list of strings, got {value!r}")

  @classmethod
  def from_dict(cls, data: dict) -> GraderConfig:
    if not isinstance(data, dict):
      raise ConfigError("Grader configuration must be a mapping.")
    known = {f.name for f in dataclasses.fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
      raise ConfigError(f"Unknown grader configuration keys: {', '.join(unknown)}")
    if "command" not in data:
      raise ConfigError("Grader configuration is missing 'command'.")

    options = data.get("options") or {}
    if not isinstance(options, dict):
      raise ConfigError("options must be a mapping.")

    try:
      return cls(
        command=cls._parse_command(data["command"]),
        timeout_seconds=float(data.get("timeout_seconds", DEFAULT_TIMEOUT_SECONDS)),
        max_workers=int(data.get("max_workers", DEFAULT_MAX_WORKERS)),
        max_publish_workers=int(data.get("max_publish_workers", DEFAULT_MAX_PUBLISH_WORKERS)),
        publish_skipped=bool(data.get("publish_skipped", True)),
        skipped_score=float(data.get("skipped_score", 0.0)),
        keep_workdirs=bool(data.get("keep_workdirs", False)),
        options=dict(options),
      )
    except (TypeError, ValueError) as e:
      raise ConfigError(f"Invalid grader configuration: {e}") from e

  @classmethod
  def from_yaml(cls, path: str | os.PathLike) -> GraderConfig:
    if not os.path.exists(path):
      raise ConfigError(f"Grader configuration not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
      try:
        data = yaml.safe_load(f)
      except yaml.YAMLError as e:
        raise ConfigError(f"Could not parse {path}: {e}") from e
    log.debug(f"Loaded grader configuration from {path}")
    return cls.from_dict(data or {})

  def with_overrides(self, **overrides) -> GraderConfig:
    changes = {k: v for k, v in overrides.items() if v is not None}
    if "command" in changes:
      changes["command"] = self._parse_command(changes["command"])
    return dataclasses.replace(self, **changes)
