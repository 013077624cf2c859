import logging.config
import os
import re
from pathlib import Path

import yaml

__version__ = "0.3.0"

LOGGING_CONFIG = Path(__file__).with_name("logging.yaml")
ENV_PLACEHOLDER = re.compile(r'\$\{([^}:]+):-([^}]+)\}')


def _env_flag(name: str, *, default: bool = False) -> bool:
  value = os.environ.get(name)
  if value is None:
    return default
  return value.strip().lower() in {"1", "true", "yes", "on", "y"}


def _expand_env_vars(config_text: str) -> str:
  """Replace ${VAR:-default} placeholders from the environment."""
  return ENV_PLACEHOLDER.sub(lambda m: os.environ.get(m.group(1), m.group(2)), config_text)


def _file_handlers(config: dict) -> dict[str, dict]:
  return {
    name: handler
    for name, handler in config.get("handlers", {}).items()
    if handler.get("class") == "logging.FileHandler"
  }


def _remove_file_handlers(config: dict) -> None:
  dropped = set(_file_handlers(config))
  for name in dropped:
    del config["handlers"][name]
  for logger in [config.get("root", {}), *config.get("loggers", {}).values()]:
    if "handlers" in logger:
      logger["handlers"] = [name for name in logger["handlers"] if name not in dropped]


def _find_project_root() -> Path:
  """Nearest directory at or above cwd holding a pyproject.toml, else cwd."""
  cwd = Path.cwd().resolve()
  return next((d for d in [cwd, *cwd.parents] if (d / "pyproject.toml").exists()), cwd)


def _anchor_file_handler_paths(config: dict, *, base_dir: Path) -> None:
  for handler in _file_handlers(config).values():
    if not handler.get("filename"):
      continue
    path = Path(handler["filename"])
    if not path.is_absolute():
      path = (base_dir / path).resolve()
    path.parent.mkdir(parents=True, exist_ok=True)
    handler["filename"] = str(path)


def setup_logging() -> None:
  if not LOGGING_CONFIG.exists():
    logging.basicConfig(level=logging.INFO)
    return

  config = yaml.safe_load(_expand_env_vars(LOGGING_CONFIG.read_text(encoding="utf-8")))
  if _env_flag("MOODLE_GRADER_FILE_LOGGING", default=True):
    _anchor_file_handler_paths(config, base_dir=_find_project_root())
  else:
    _remove_file_handlers(config)
  logging.config.dictConfig(config)


setup_logging()
