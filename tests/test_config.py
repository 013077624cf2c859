import pytest

from MoodleGrader.config import DEFAULT_MAX_WORKERS, DEFAULT_TIMEOUT_SECONDS, GraderConfig
from MoodleGrader.exceptions import ConfigError


class TestGraderConfig:
    """Tests for loading and validating grader configuration."""

    def test_from_yaml_with_defaults(self, tmp_path):
        path = tmp_path / "grader.yaml"
        path.write_text("command: runhaskell Grader.hs --strict\n", encoding="utf-8")

        config = GraderConfig.from_yaml(path)

        assert config.command == ("runhaskell", "Grader.hs", "--strict")
        assert config.timeout_seconds == DEFAULT_TIMEOUT_SECONDS
        assert config.max_workers == DEFAULT_MAX_WORKERS
        assert config.publish_skipped is True
        assert config.skipped_score == 0.0
        assert config.options == {}

    def test_full_configuration(self, tmp_path):
        path = tmp_path / "grader.yaml"
        path.write_text(
            "command: [python3, grade.py]\n"
            "timeout_seconds: 120\n"
            "max_workers: 8\n"
            "max_publish_workers: 2\n"
            "publish_skipped: false\n"
            "skipped_score: 1\n"
            "keep_workdirs: true\n"
            "options:\n"
            "  tests: tests/Spec.hs\n",
            encoding="utf-8",
        )

        config = GraderConfig.from_yaml(path)

        assert config.command == ("python3", "grade.py")
        assert config.timeout_seconds == 120.0
        assert config.max_workers == 8
        assert config.max_publish_workers == 2
        assert config.publish_skipped is False
        assert config.skipped_score == 1.0
        assert config.keep_workdirs is True
        assert config.options == {"tests": "tests/Spec.hs"}

    def test_unknown_keys_are_rejected(self):
        with pytest.raises(ConfigError, match="timeout"):
            GraderConfig.from_dict({"command": "grade", "timeout": 5})

    def test_missing_command(self):
        with pytest.raises(ConfigError, match="command"):
            GraderConfig.from_dict({"max_workers": 2})

    @pytest.mark.parametrize("data", [
        {"command": ""},
        {"command": "grade", "timeout_seconds": 0},
        {"command": "grade", "max_workers": 0},
        {"command": "grade", "max_publish_workers": -1},
        {"command": "grade", "skipped_score": -1},
        {"command": "grade", "max_workers": "many"},
        {"command": {"run": "grade"}},
        {"command": "grade", "options": ["a"]},
    ])
    def test_invalid_values(self, data):
        with pytest.raises(ConfigError):
            GraderConfig.from_dict(data)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            GraderConfig.from_yaml(tmp_path / "missing.yaml")

    def test_unparseable_file(self, tmp_path):
        path = tmp_path / "grader.yaml"
        path.write_text("command: [unclosed\n", encoding="utf-8")

        with pytest.raises(ConfigError, match="Could not parse"):
            GraderConfig.from_yaml(path)

    def test_overrides_ignore_none(self):
        config = GraderConfig.from_dict({"command": "grade", "max_workers": 2})

        updated = config.with_overrides(command="other --fast", timeout_seconds=None, max_workers=6)

        assert updated.command == ("other", "--fast")
        assert updated.timeout_seconds == DEFAULT_TIMEOUT_SECONDS
        assert updated.max_workers == 6
        assert config.max_workers == 2
