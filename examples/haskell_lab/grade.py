#!/usr/bin/env python3
"""
Minimal grader: full marks when every required file is present, minus a
penalty per remaining `TODO` marker.

Invoked as `grade.py <assignment.yaml> <submission-dir>`; prints a YAML
mapping with `score` and `feedback`.
"""
import sys
from pathlib import Path

import yaml


def main() -> int:
    assignment_file, submission_dir = Path(sys.argv[1]), Path(sys.argv[2])
    description = yaml.safe_load(assignment_file.read_text(encoding="utf-8"))
    max_grade = description["assignment"]["max_grade"]
    options = description.get("options") or {}

    notes = []
    score = max_grade
    for name in options.get("required_files", []):
        if not any(submission_dir.rglob(name)):
            notes.append(f"Missing required file {name}.")
            score = 0

    todos = 0
    for path in submission_dir.rglob("*.hs"):
        todos += path.read_text(encoding="utf-8", errors="replace").count("TODO")
    if todos:
        score -= todos * options.get("todo_penalty", 1)
        notes.append(f"{todos} TODO marker(s) left in the code.")

    yaml.safe_dump(
        {"score": max(0, score), "feedback": " ".join(notes) or "All checks passed."},
        sys.stdout,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
