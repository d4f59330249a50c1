#!/usr/bin/env python3
"""
Plan Validator for Claude Code
Checks a markdown work plan for structure, checkboxes, file references,
task numbering, effort estimate and verification steps before execution.

Usage:
    python scripts/plan-validator.py PLAN [--project-root DIR] [--json] [--verbose]

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import argparse
import json
import os
import re
import sys
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Optional

# Plan locations (relative to the project root)
CLAUDE_DIR = ".claude"
PLANS_DIR = f"{CLAUDE_DIR}/plans"
PLAN_EXTENSION = ".md"

# Section headings
TLDR_HEADING = "## TL;DR"
CONTEXT_HEADING = "## Context"
OBJECTIVES_HEADING = "## Objectives"
TODOS_HEADING = "## TODOs"
VERIFICATION_HEADING = "## Verification"

REQUIRED_SECTIONS = [TLDR_HEADING, TODOS_HEADING, VERIFICATION_HEADING]
OPTIONAL_SECTIONS = [CONTEXT_HEADING, OBJECTIVES_HEADING]

# Task sub-fields every TODO entry should carry
TASK_SUB_FIELDS = ["What", "Files", "Acceptance"]

VALID_EFFORT_VALUES = ["quick", "short", "medium", "large", "xl"]

# Validation categories
CATEGORY_STRUCTURE = "structure"
CATEGORY_CHECKBOXES = "checkboxes"
CATEGORY_FILE_REFERENCES = "file-references"
CATEGORY_NUMBERING = "numbering"
CATEGORY_EFFORT_ESTIMATE = "effort-estimate"
CATEGORY_VERIFICATION = "verification"

SEVERITY_ERROR = "error"
SEVERITY_WARNING = "warning"

LINE_HEADING = "heading"
LINE_CHECKBOX = "checkbox"
LINE_TEXT = "text"

# A checkbox marker starts the line: "- [ ]", "- [x]", "* [ ]", "* [X]"
CHECKBOX_PATTERN = re.compile(r"^[-*]\s*\[(\s*|[xX])\]")
TASK_NUMBER_PATTERN = re.compile(r"^[-*]\s*\[(?:\s*|[xX])\]\s*(\d+)\.")
HEADING_PATTERN = re.compile(r"^(#{1,6})\s+(.*?)\s*$")

FILES_FIELD_PATTERN = re.compile(r"^\s*(?:[-*]\s+)?\*\*Files\*\*:?\s*(.+)$")
EFFORT_FIELD_PATTERN = re.compile(r"\*\*Estimated Effort:?\*\*:?\s*(.+)", re.IGNORECASE)

# Markers that say a referenced file is created by the task itself
NEW_FILE_INDICATORS = [
    re.compile(r"^\s*create\s+", re.IGNORECASE),
    re.compile(r"^\s*new:\s*", re.IGNORECASE),
    re.compile(r"\(new\)", re.IGNORECASE),
    re.compile(r"^\s*add\s+", re.IGNORECASE),
]
LEADING_VERB_PATTERN = re.compile(r"^\s*(?:(?:create|modify|add)\s+|new:\s*)", re.IGNORECASE)
NEW_MARKER_PATTERN = re.compile(r"\(new\)", re.IGNORECASE)

# Extensions that make a bare token (no "/") look like a file reference
KNOWN_FILE_EXTENSIONS = (
    ".ts", ".tsx", ".js", ".jsx", ".mjs", ".py", ".json", ".md",
    ".yaml", ".yml", ".toml", ".css", ".scss", ".html", ".sh",
)

# Global verbose flag
VERBOSE = False


def verbose_log(message: str, prefix: str = "VERBOSE") -> None:
    """Print a verbose log message if verbose mode is enabled."""
    if VERBOSE:
        timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        print(f"[{timestamp}] [{prefix}] {message}", file=sys.stderr, flush=True)


# =============================================================================
# PLAN SCANNING
# =============================================================================

@dataclass
class PlanLine:
    """One scanned line of a plan document."""
    kind: str
    text: str
    line_number: int
    level: int = 0
    title: str = ""
    checked: bool = False
    task_number: Optional[int] = None


@dataclass
class PlanProgress:
    """Checkbox counts for a plan document. Never persisted."""
    total: int = 0
    completed: int = 0

    @property
    def is_complete(self) -> bool:
        """True when there is nothing left to do (no boxes, or all checked)."""
        return self.total == 0 or self.completed == self.total

    @property
    def remaining(self) -> int:
        return self.total - self.completed


def scan_plan(content: str) -> list[PlanLine]:
    """Scan plan text into heading, checkbox and text lines.

    Headings and checkboxes must start the line. Indented ones are plain
    text, as are fenced or quoted examples that happen to contain brackets.
    """
    lines: list[PlanLine] = []
    for index, raw in enumerate(content.splitlines(), start=1):
        heading = HEADING_PATTERN.match(raw)
        if heading:
            lines.append(PlanLine(
                kind=LINE_HEADING,
                text=raw,
                line_number=index,
                level=len(heading.group(1)),
                title=heading.group(2),
            ))
            continue

        checkbox = CHECKBOX_PATTERN.match(raw)
        if checkbox:
            number = TASK_NUMBER_PATTERN.match(raw)
            lines.append(PlanLine(
                kind=LINE_CHECKBOX,
                text=raw,
                line_number=index,
                checked=checkbox.group(1).lower() == "x",
                task_number=int(number.group(1)) if number else None,
            ))
            continue

        lines.append(PlanLine(kind=LINE_TEXT, text=raw, line_number=index))
    return lines


def find_section_index(lines: list[PlanLine], heading: str) -> Optional[int]:
    """Index of the first heading line that matches `heading` exactly, or None."""
    for index, line in enumerate(lines):
        if line.kind == LINE_HEADING and line.text.strip() == heading:
            return index
    return None


def extract_section(lines: list[PlanLine], heading: str) -> Optional[list[PlanLine]]:
    """Lines after `heading` up to (not including) the next level-2 heading.

    Returns None when the heading is absent, an empty list for an empty section.
    """
    start = find_section_index(lines, heading)
    if start is None:
        return None

    end = start + 1
    while end < len(lines):
        line = lines[end]
        if line.kind == LINE_HEADING and line.level == 2:
            break
        end += 1
    return lines[start + 1:end]


def task_bodies(section: list[PlanLine]) -> list[tuple[PlanLine, list[PlanLine]]]:
    """Pair each checkbox line with the non-checkbox lines that follow it."""
    checkbox_indexes = [i for i, line in enumerate(section) if line.kind == LINE_CHECKBOX]
    tasks = []
    for position, start in enumerate(checkbox_indexes):
        if position + 1 < len(checkbox_indexes):
            end = checkbox_indexes[position + 1]
        else:
            end = len(section)
        tasks.append((section[start], section[start + 1:end]))
    return tasks


def read_plan_text(plan_path: str) -> Optional[str]:
    """Read a plan file, returning None if it is missing or unreadable."""
    try:
        with open(plan_path, "r", encoding="utf-8") as f:
            return f.read()
    except (OSError, UnicodeDecodeError) as e:
        verbose_log(f"Could not read plan {plan_path}: {e}", "READ")
        return None


# =============================================================================
# PROGRESS
# =============================================================================

def count_progress(content: str) -> PlanProgress:
    """Count checked and unchecked boxes across the whole document."""
    checkboxes = [line for line in scan_plan(content) if line.kind == LINE_CHECKBOX]
    return PlanProgress(
        total=len(checkboxes),
        completed=sum(1 for line in checkboxes if line.checked),
    )


def get_plan_progress(plan_path: str) -> PlanProgress:
    """Progress snapshot for a plan file.

    A missing or unreadable file is reported as 0/0 and therefore complete,
    which lets callers drop state that points at a deleted plan.
    """
    if not os.path.isfile(plan_path):
        return PlanProgress()
    content = read_plan_text(plan_path)
    if content is None:
        return PlanProgress()
    return count_progress(content)


# =============================================================================
# VALIDATION
# =============================================================================

@dataclass
class ValidationIssue:
    """A single problem found in a plan file."""
    severity: str   # "error" or "warning"
    category: str
    message: str


@dataclass
class ValidationResult:
    """Outcome of validate_plan(). `valid` is False when any error is present."""
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return len(self.errors) == 0

    def error(self, category: str, message: str) -> None:
        self.errors.append(ValidationIssue(SEVERITY_ERROR, category, message))

    def warn(self, category: str, message: str) -> None:
        self.warnings.append(ValidationIssue(SEVERITY_WARNING, category, message))

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "errors": [asdict(issue) for issue in self.errors],
            "warnings": [asdict(issue) for issue in self.warnings],
        }


def is_within_directory(path: str, directory: str) -> bool:
    """True if `path` equals `directory` or sits strictly below it.

    Both arguments must already be absolute and normalized.
    """
    return path == directory or path.startswith(directory.rstrip(os.sep) + os.sep)


def is_allowed_plan_path(plan_path: str, project_root: str) -> bool:
    """True if the plan resolves to a location under <project_root>/.claude/plans/."""
    allowed_dir = os.path.abspath(os.path.join(project_root, PLANS_DIR))
    return is_within_directory(os.path.abspath(plan_path), allowed_dir)


def validate_plan(plan_path: str, project_root: str) -> ValidationResult:
    """Validate a plan file before work on it starts.

    The plan must live under <project_root>/.claude/plans/ and exist; either
    failure is reported as a single structure error and nothing else runs.
    The six checks then run independently over the scanned document.

    Args:
        plan_path: Path to the plan markdown file.
        project_root: Project root used for confinement and file references.

    Returns:
        A ValidationResult with blocking errors and non-blocking warnings.
    """
    result = ValidationResult()

    resolved_plan = os.path.abspath(plan_path)
    if not is_allowed_plan_path(plan_path, project_root):
        result.error(
            CATEGORY_STRUCTURE,
            f"Plan path is outside the allowed directory ({PLANS_DIR}/): {plan_path}",
        )
        return result

    if not os.path.isfile(resolved_plan):
        result.error(CATEGORY_STRUCTURE, f"Plan file not found: {plan_path}")
        return result

    content = read_plan_text(resolved_plan)
    if content is None:
        result.error(CATEGORY_STRUCTURE, f"Plan file could not be read: {plan_path}")
        return result

    lines = scan_plan(content)
    verbose_log(f"Scanned {len(lines)} lines from {resolved_plan}", "VALIDATE")

    validate_structure(lines, result)
    validate_checkboxes(lines, result)
    validate_file_references(lines, project_root, result)
    validate_numbering(lines, result)
    validate_effort_estimate(lines, result)
    validate_verification_section(lines, result)

    verbose_log(
        f"Validation finished: {len(result.errors)} errors, {len(result.warnings)} warnings",
        "VALIDATE",
    )
    return result


def validate_structure(lines: list[PlanLine], result: ValidationResult) -> None:
    for heading in REQUIRED_SECTIONS:
        if find_section_index(lines, heading) is None:
            result.error(CATEGORY_STRUCTURE, f"Missing required section: {heading}")

    for heading in OPTIONAL_SECTIONS:
        if find_section_index(lines, heading) is None:
            result.warn(CATEGORY_STRUCTURE, f"Missing optional section: {heading}")


def validate_checkboxes(lines: list[PlanLine], result: ValidationResult) -> None:
    """Require at least one TODO checkbox and the What/Files/Acceptance fields."""
    section = extract_section(lines, TODOS_HEADING)
    if section is None:
        return

    tasks = task_bodies(section)
    if not tasks:
        result.error(
            CATEGORY_CHECKBOXES,
            f"{TODOS_HEADING} section contains no checkboxes (- [ ] or - [x])",
        )
        return

    for task_index, (_, body) in enumerate(tasks, start=1):
        body_text = "\n".join(line.text for line in body)
        for sub_field in TASK_SUB_FIELDS:
            if f"**{sub_field}**" not in body_text:
                result.warn(
                    CATEGORY_CHECKBOXES,
                    f"Task {task_index} is missing **{sub_field}** sub-field",
                )


def is_new_file(fragment: str) -> bool:
    return any(pattern.search(fragment) for pattern in NEW_FILE_INDICATORS)


def extract_file_path(fragment: str) -> Optional[str]:
    """Pull a path out of one **Files** fragment.

    Returns None when the fragment reads like prose rather than a path.
    """
    cleaned = LEADING_VERB_PATTERN.sub("", fragment, count=1)
    cleaned = NEW_MARKER_PATTERN.sub("", cleaned).strip().strip("`").strip()
    if not cleaned:
        return None

    first_token = cleaned.split()[0].strip("`")
    if not first_token:
        return None
    if "/" in first_token or first_token.lower().endswith(KNOWN_FILE_EXTENSIONS):
        return first_token
    if "/" not in cleaned:
        return None
    return cleaned


def validate_file_references(
    lines: list[PlanLine], project_root: str, result: ValidationResult
) -> None:
    """Warn about absolute, escaping or missing paths in **Files** fields."""
    section = extract_section(lines, TODOS_HEADING)
    if section is None:
        return

    resolved_root = os.path.abspath(project_root)
    for line in section:
        match = FILES_FIELD_PATTERN.match(line.text)
        if not match:
            continue

        for fragment in match.group(1).strip().split(","):
            fragment = fragment.strip()
            if not fragment or is_new_file(fragment):
                continue

            file_path = extract_file_path(fragment)
            if not file_path:
                continue

            if os.path.isabs(file_path):
                result.warn(
                    CATEGORY_FILE_REFERENCES,
                    f"Absolute file path not allowed in plan references: {file_path}",
                )
                continue

            absolute_path = os.path.abspath(os.path.join(resolved_root, file_path))
            if not is_within_directory(absolute_path, resolved_root):
                result.warn(
                    CATEGORY_FILE_REFERENCES,
                    f"File reference escapes project directory (path traversal): {file_path}",
                )
                continue

            if not os.path.exists(absolute_path):
                result.warn(
                    CATEGORY_FILE_REFERENCES,
                    f"Referenced file does not exist (may be created by an earlier task): {file_path}",
                )


def validate_numbering(lines: list[PlanLine], result: ValidationResult) -> None:
    """Reject duplicate task numbers and flag gaps. Unnumbered tasks are ignored."""
    section = extract_section(lines, TODOS_HEADING)
    if section is None:
        return

    numbers: list[int] = []
    seen: set[int] = set()
    for line in section:
        if line.kind != LINE_CHECKBOX or line.task_number is None:
            continue
        if line.task_number in seen:
            result.error(CATEGORY_NUMBERING, f"Duplicate task number: {line.task_number}")
        else:
            seen.add(line.task_number)
            numbers.append(line.task_number)

    if len(numbers) < 2:
        return

    ordered = sorted(numbers)
    for previous, current in zip(ordered, ordered[1:]):
        if current != previous + 1:
            result.warn(
                CATEGORY_NUMBERING,
                f"Gap in task numbering: expected {previous + 1} but found {current}",
            )


def validate_effort_estimate(lines: list[PlanLine], result: ValidationResult) -> None:
    section = extract_section(lines, TLDR_HEADING)
    if section is None:
        return

    match = None
    for line in section:
        match = EFFORT_FIELD_PATTERN.search(line.text)
        if match:
            break

    if not match:
        result.warn(
            CATEGORY_EFFORT_ESTIMATE,
            f"Missing **Estimated Effort** in {TLDR_HEADING} section",
        )
        return

    value = match.group(1).strip()
    if value.lower() not in VALID_EFFORT_VALUES:
        result.warn(
            CATEGORY_EFFORT_ESTIMATE,
            f'Invalid effort estimate value: "{value}". '
            f"Expected one of: Quick, Short, Medium, Large, XL",
        )


def validate_verification_section(lines: list[PlanLine], result: ValidationResult) -> None:
    section = extract_section(lines, VERIFICATION_HEADING)
    if section is None:
        return

    if not any(line.kind == LINE_CHECKBOX for line in section):
        result.error(
            CATEGORY_VERIFICATION,
            f"{VERIFICATION_HEADING} section contains no checkboxes: "
            f"at least one verifiable condition is required",
        )


def format_validation_results(result: ValidationResult) -> str:
    """Render errors and warnings as markdown bullet lists."""
    lines: list[str] = []

    if result.errors:
        lines.append("**Errors (blocking):**")
        for issue in result.errors:
            lines.append(f"- [{issue.category}] {issue.message}")

    if result.warnings:
        if result.errors:
            lines.append("")
        lines.append("**Warnings:**")
        for issue in result.warnings:
            lines.append(f"- [{issue.category}] {issue.message}")

    return "\n".join(lines)


def main():
    global VERBOSE

    parser = argparse.ArgumentParser(
        description="Validate a markdown work plan before execution"
    )
    parser.add_argument(
        "plan",
        help=f"Path to the plan file (must live under {PLANS_DIR}/)"
    )
    parser.add_argument(
        "--project-root",
        default=".",
        help="Project root directory (default: current directory)"
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the result as JSON"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose output with detailed tracing"
    )

    args = parser.parse_args()
    VERBOSE = args.verbose

    result = validate_plan(args.plan, args.project_root)
    # Only count boxes in files the guard accepts
    progress = None
    if is_allowed_plan_path(args.plan, args.project_root):
        progress = get_plan_progress(args.plan)

    if args.json:
        report = result.to_dict()
        report["progress"] = None
        if progress is not None:
            report["progress"] = {
                "total": progress.total,
                "completed": progress.completed,
                "is_complete": progress.is_complete,
            }
        print(json.dumps(report, indent=2))
    else:
        status = "VALID" if result.valid else "INVALID"
        if progress is not None:
            print(f"[{status}] {args.plan} ({progress.completed}/{progress.total} tasks completed)")
        else:
            print(f"[{status}] {args.plan}")
        formatted = format_validation_results(result)
        if formatted:
            print(formatted)

    sys.exit(0 if result.valid else 1)


if __name__ == "__main__":
    main()
