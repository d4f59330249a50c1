# tests/test_plan_validator.py
# Unit tests for plan-validator.py: plan scanning, progress counting and
# the six validation categories.

import importlib.util
import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest

SCRIPTS_DIR = Path(__file__).resolve().parent.parent / "scripts"

# plan-validator.py has a hyphen in the filename, so we must use importlib
# to load it as a module under a valid Python identifier.
spec = importlib.util.spec_from_file_location(
    "plan_validator", str(SCRIPTS_DIR / "plan-validator.py")
)
mod = importlib.util.module_from_spec(spec)
spec.loader.exec_module(mod)

scan_plan = mod.scan_plan
extract_section = mod.extract_section
task_bodies = mod.task_bodies
count_progress = mod.count_progress
get_plan_progress = mod.get_plan_progress
validate_plan = mod.validate_plan
extract_file_path = mod.extract_file_path
format_validation_results = mod.format_validation_results
ValidationResult = mod.ValidationResult
PLANS_DIR = mod.PLANS_DIR


VALID_PLAN = """# Login rate limiting

## TL;DR
**Estimated Effort**: Medium
Throttle repeated failed logins.

## Context
Brute-force attempts are showing up in the auth logs.

## Objectives
Lock an account for five minutes after five failed attempts.

## TODOs

- [ ] 1. Add the limiter
  **What**: Sliding-window counter keyed by username
  **Files**: src/limiter.py (new)
  **Acceptance**: Unit tests cover the window boundaries

- [ ] 2. Call the limiter from login
  **What**: Reject attempts while locked
  **Files**: src/login.py
  **Acceptance**: Sixth attempt returns 429

## Verification
- [ ] Full test suite passes
"""


def write_plan(project_root: Path, content: str, name: str = "rate-limit.md") -> Path:
    """Write a plan under .claude/plans/ and create the files it references."""
    plans_dir = project_root / PLANS_DIR
    plans_dir.mkdir(parents=True, exist_ok=True)
    (project_root / "src").mkdir(exist_ok=True)
    (project_root / "src" / "login.py").write_text("def login():\n    pass\n")
    plan_path = plans_dir / name
    plan_path.write_text(content)
    return plan_path


def categories(issues) -> list[str]:
    return [issue.category for issue in issues]


# --- scan_plan tests ---


def test_scan_plan_classifies_lines():
    """Headings, checkboxes and text lines are told apart."""
    lines = scan_plan("## TODOs\n- [ ] 3. Task\n  **What**: x\n* [X] done\n")
    assert [line.kind for line in lines] == ["heading", "checkbox", "text", "checkbox"]
    assert lines[0].level == 2
    assert lines[0].title == "TODOs"
    assert lines[1].task_number == 3
    assert lines[1].checked is False
    assert lines[3].checked is True
    assert lines[3].task_number is None


def test_scan_plan_ignores_indented_checkboxes():
    """Only checkboxes at the start of a line count as tasks."""
    lines = scan_plan("  - [ ] nested\n- [ ] top\n")
    assert [line.kind for line in lines] == ["text", "checkbox"]


def test_extract_section_stops_at_next_level_two_heading():
    """A section runs until the next ## heading; ### headings stay inside."""
    lines = scan_plan("## TODOs\n### Phase 1\n- [ ] a\n## Verification\n- [ ] b\n")
    section = extract_section(lines, "## TODOs")
    assert [line.text for line in section] == ["### Phase 1", "- [ ] a"]


def test_indented_heading_does_not_end_section():
    """Only a heading at the start of a line closes the TODOs section."""
    lines = scan_plan("## TODOs\n- [ ] 1. a\n  ## Notes\n- [ ] 3. b\n## Verification\n")
    assert [line.kind for line in lines[:4]] == ["heading", "checkbox", "text", "checkbox"]
    section = extract_section(lines, "## TODOs")
    assert [line.task_number for line in section if line.kind == "checkbox"] == [1, 3]


def test_indented_heading_keeps_later_tasks_validated(tmp_path: Path):
    content = VALID_PLAN.replace(
        "  **Acceptance**: Unit tests cover the window boundaries\n",
        "  **Acceptance**: Unit tests cover the window boundaries\n  ## Notes\n",
    ).replace("- [ ] 2.", "- [ ] 1.")
    plan = write_plan(tmp_path, content)
    result = validate_plan(str(plan), str(tmp_path))
    assert [e.message for e in result.errors] == ["Duplicate task number: 1"]


def test_extract_section_missing_returns_none():
    """A missing heading yields None rather than an empty section."""
    assert extract_section(scan_plan("## TL;DR\n"), "## TODOs") is None
    assert extract_section(scan_plan("## TODOs\n"), "## TODOs") == []


def test_task_bodies_pairs_checkbox_with_following_lines():
    """Each checkbox owns the non-checkbox lines until the next checkbox."""
    lines = scan_plan("intro\n- [ ] a\n  one\n  two\n- [ ] b\n  three\n")
    tasks = task_bodies(lines)
    assert len(tasks) == 2
    assert [line.text for line in tasks[0][1]] == ["  one", "  two"]
    assert [line.text for line in tasks[1][1]] == ["  three"]


# --- progress tests ---


def test_count_progress_counts_whole_document():
    """Checkboxes outside the TODOs section count too."""
    progress = count_progress(VALID_PLAN.replace("- [ ] 1.", "- [x] 1."))
    assert progress.total == 3
    assert progress.completed == 1
    assert progress.is_complete is False


def test_count_progress_accepts_both_bullets_and_case():
    """Both - and * bullets work, and the check mark is case-insensitive."""
    progress = count_progress("- [x] a\n* [X] b\n* [ ] c\n- [] d\n")
    assert progress.total == 4
    assert progress.completed == 2


def test_count_progress_no_checkboxes_is_complete():
    """A document without checkboxes is vacuously complete."""
    progress = count_progress("# Notes\nnothing to do\n")
    assert progress.total == 0
    assert progress.is_complete is True


def test_count_progress_all_checked_is_complete():
    progress = count_progress("- [x] a\n- [x] b\n")
    assert progress.is_complete is True
    assert progress.remaining == 0


def test_get_plan_progress_missing_file(tmp_path: Path):
    """A missing plan reads as 0/0 and complete."""
    progress = get_plan_progress(str(tmp_path / "gone.md"))
    assert (progress.total, progress.completed, progress.is_complete) == (0, 0, True)


def test_get_plan_progress_unreadable_file(tmp_path: Path):
    """A plan that cannot be decoded reads as 0/0 and complete."""
    plan = tmp_path / "binary.md"
    plan.write_bytes(b"\xff\xfe\x00- [ ] a\n")
    progress = get_plan_progress(str(plan))
    assert progress.total == 0
    assert progress.is_complete is True


def test_get_plan_progress_reads_fresh_each_call(tmp_path: Path):
    """Progress reflects edits made between calls."""
    plan = tmp_path / "p.md"
    plan.write_text("- [ ] a\n- [ ] b\n")
    assert get_plan_progress(str(plan)).completed == 0
    plan.write_text("- [x] a\n- [ ] b\n")
    assert get_plan_progress(str(plan)).completed == 1


# --- validate_plan guard tests ---


def test_validate_valid_plan_has_no_issues(tmp_path: Path):
    """The reference plan validates with zero errors and zero warnings."""
    plan = write_plan(tmp_path, VALID_PLAN)
    result = validate_plan(str(plan), str(tmp_path))
    assert result.valid is True
    assert result.errors == []
    assert result.warnings == []


@pytest.mark.parametrize("outside", ["/etc/shadow", ".claude/plans/../../etc/passwd"])
def test_validate_rejects_path_outside_plans_dir(tmp_path: Path, outside: str):
    """Paths outside .claude/plans/ give a single structure error."""
    plan_path = outside if outside.startswith("/") else os.path.join(str(tmp_path), outside)
    result = validate_plan(plan_path, str(tmp_path))
    assert result.valid is False
    assert len(result.errors) == 1
    assert result.errors[0].category == "structure"
    assert "outside the allowed directory" in result.errors[0].message
    assert result.warnings == []


def test_validate_rejects_sibling_directory_with_shared_prefix(tmp_path: Path):
    """.claude/plans-evil/ is not inside .claude/plans/."""
    evil = tmp_path / ".claude" / "plans-evil"
    evil.mkdir(parents=True)
    (evil / "x.md").write_text(VALID_PLAN)
    result = validate_plan(str(evil / "x.md"), str(tmp_path))
    assert len(result.errors) == 1
    assert "outside the allowed directory" in result.errors[0].message


def test_validate_missing_plan_file(tmp_path: Path):
    """A plan path inside the plans dir that doesn't exist is a structure error."""
    (tmp_path / PLANS_DIR).mkdir(parents=True)
    result = validate_plan(str(tmp_path / PLANS_DIR / "nope.md"), str(tmp_path))
    assert len(result.errors) == 1
    assert result.errors[0].category == "structure"
    assert "Plan file not found" in result.errors[0].message


# --- structure tests ---


def test_missing_todos_heading_reports_only_structure(tmp_path: Path):
    """Dropping ## TODOs yields one structure error and skips dependent checks."""
    plan = write_plan(tmp_path, VALID_PLAN.replace("## TODOs\n", ""))
    result = validate_plan(str(plan), str(tmp_path))
    assert result.valid is False
    assert len(result.errors) == 1
    assert result.errors[0].category == "structure"
    assert "TODOs" in result.errors[0].message
    skipped = {"checkboxes", "numbering", "file-references"}
    assert not skipped & set(categories(result.errors + result.warnings))


def test_missing_optional_sections_are_warnings(tmp_path: Path):
    content = VALID_PLAN.replace("## Context\n", "").replace("## Objectives\n", "")
    plan = write_plan(tmp_path, content)
    result = validate_plan(str(plan), str(tmp_path))
    assert result.valid is True
    messages = [w.message for w in result.warnings]
    assert "Missing optional section: ## Context" in messages
    assert "Missing optional section: ## Objectives" in messages


def test_missing_tldr_and_verification_are_errors(tmp_path: Path):
    content = VALID_PLAN.replace("## TL;DR\n", "").replace("## Verification\n", "")
    plan = write_plan(tmp_path, content)
    result = validate_plan(str(plan), str(tmp_path))
    messages = [e.message for e in result.errors]
    assert "Missing required section: ## TL;DR" in messages
    assert "Missing required section: ## Verification" in messages
    # Both dependent checks are skipped once their section is gone.
    assert "effort-estimate" not in categories(result.warnings)
    assert "verification" not in categories(result.errors)


# --- checkbox tests ---


def test_todos_without_checkboxes_is_error(tmp_path: Path):
    content = """## TL;DR
**Estimated Effort**: Quick

## Context
c

## Objectives
o

## TODOs
1. Do the thing

## Verification
- [ ] check
"""
    plan = write_plan(tmp_path, content)
    result = validate_plan(str(plan), str(tmp_path))
    assert categories(result.errors) == ["checkboxes"]
    assert "no checkboxes" in result.errors[0].message


def test_missing_sub_fields_warn_per_task(tmp_path: Path):
    """Each task missing What/Files/Acceptance gets one warning per field."""
    content = VALID_PLAN.replace("  **Acceptance**: Sixth attempt returns 429\n", "")
    content = content.replace("  **What**: Sliding-window counter keyed by username\n", "")
    plan = write_plan(tmp_path, content)
    result = validate_plan(str(plan), str(tmp_path))
    assert result.valid is True
    messages = [w.message for w in result.warnings if w.category == "checkboxes"]
    assert messages == [
        "Task 1 is missing **What** sub-field",
        "Task 2 is missing **Acceptance** sub-field",
    ]


def test_star_bullet_checkboxes_are_accepted(tmp_path: Path):
    plan = write_plan(tmp_path, VALID_PLAN.replace("- [ ] ", "* [ ] "))
    result = validate_plan(str(plan), str(tmp_path))
    assert result.valid is True
    assert result.warnings == []


# --- file reference tests ---


def plan_with_files(files_value: str) -> str:
    return VALID_PLAN.replace("**Files**: src/login.py", f"**Files**: {files_value}")


def test_path_traversal_reference_warns(tmp_path: Path):
    plan = write_plan(tmp_path, plan_with_files("../../etc/passwd"))
    result = validate_plan(str(plan), str(tmp_path))
    refs = [w.message for w in result.warnings if w.category == "file-references"]
    assert len(refs) == 1
    assert "path traversal" in refs[0]
    assert result.valid is True


def test_absolute_reference_warns(tmp_path: Path):
    plan = write_plan(tmp_path, plan_with_files("/etc/shadow"))
    result = validate_plan(str(plan), str(tmp_path))
    refs = [w.message for w in result.warnings if w.category == "file-references"]
    assert len(refs) == 1
    assert "Absolute file path" in refs[0]


def test_new_file_reference_is_not_checked(tmp_path: Path):
    """Files marked as new are skipped even when they don't exist."""
    plan = write_plan(tmp_path, plan_with_files("src/x.ts (new), create src/y.ts, new: lib/z.py"))
    result = validate_plan(str(plan), str(tmp_path))
    assert "file-references" not in categories(result.warnings)


def test_missing_reference_warns(tmp_path: Path):
    plan = write_plan(tmp_path, plan_with_files("src/login.py, src/missing.py"))
    result = validate_plan(str(plan), str(tmp_path))
    refs = [w.message for w in result.warnings if w.category == "file-references"]
    assert refs == [
        "Referenced file does not exist (may be created by an earlier task): src/missing.py"
    ]


def test_prose_files_value_is_ignored(tmp_path: Path):
    plan = write_plan(tmp_path, plan_with_files("none, just configuration changes"))
    result = validate_plan(str(plan), str(tmp_path))
    assert "file-references" not in categories(result.warnings)


@pytest.mark.parametrize("files_value", ["` `", "``", "`  `, src/login.py"])
def test_empty_code_span_reference_is_ignored(tmp_path: Path, files_value: str):
    plan = write_plan(tmp_path, plan_with_files(files_value))
    result = validate_plan(str(plan), str(tmp_path))
    assert "file-references" not in categories(result.warnings)
    assert result.valid is True


def test_extract_file_path_shapes():
    assert extract_file_path("modify src/login.py to add the hook") == "src/login.py"
    assert extract_file_path("`README.md`") == "README.md"
    assert extract_file_path("the config module") is None
    assert extract_file_path("(new)") is None
    assert extract_file_path("` `") is None
    assert extract_file_path("modify ` `") is None


# --- numbering tests ---


def test_duplicate_task_number_is_error(tmp_path: Path):
    plan = write_plan(tmp_path, VALID_PLAN.replace("- [ ] 2.", "- [ ] 1."))
    result = validate_plan(str(plan), str(tmp_path))
    numbering = [e.message for e in result.errors if e.category == "numbering"]
    assert numbering == ["Duplicate task number: 1"]


def test_gap_in_numbering_is_warning(tmp_path: Path):
    content = VALID_PLAN.replace("- [ ] 2.", "- [ ] 4.").replace(
        "## Verification",
        "- [ ] 2. Document the limit\n"
        "  **What**: Add a note\n"
        "  **Files**: src/login.py\n"
        "  **Acceptance**: Reviewed\n\n"
        "## Verification",
    )
    plan = write_plan(tmp_path, content)
    result = validate_plan(str(plan), str(tmp_path))
    assert result.valid is True
    numbering = [w.message for w in result.warnings if w.category == "numbering"]
    assert len(numbering) == 1
    assert "Gap" in numbering[0]
    assert "expected 3 but found 4" in numbering[0]


def test_unnumbered_tasks_are_ignored_by_numbering(tmp_path: Path):
    plan = write_plan(tmp_path, VALID_PLAN.replace("- [ ] 1. ", "- [ ] ").replace("- [ ] 2. ", "- [ ] "))
    result = validate_plan(str(plan), str(tmp_path))
    assert "numbering" not in categories(result.errors + result.warnings)


# --- effort estimate tests ---


def test_missing_effort_estimate_warns(tmp_path: Path):
    plan = write_plan(tmp_path, VALID_PLAN.replace("**Estimated Effort**: Medium\n", ""))
    result = validate_plan(str(plan), str(tmp_path))
    assert result.valid is True
    assert categories(result.warnings) == ["effort-estimate"]


def test_invalid_effort_estimate_names_value(tmp_path: Path):
    plan = write_plan(tmp_path, VALID_PLAN.replace("Medium", "Two weeks"))
    result = validate_plan(str(plan), str(tmp_path))
    effort = [w.message for w in result.warnings if w.category == "effort-estimate"]
    assert len(effort) == 1
    assert '"Two weeks"' in effort[0]


def test_effort_estimate_is_case_insensitive(tmp_path: Path):
    plan = write_plan(tmp_path, VALID_PLAN.replace("Medium", "XL"))
    assert validate_plan(str(plan), str(tmp_path)).warnings == []


# --- verification tests ---


def test_verification_without_checkbox_is_error(tmp_path: Path):
    plan = write_plan(tmp_path, VALID_PLAN.replace("- [ ] Full test suite passes", "Run the tests."))
    result = validate_plan(str(plan), str(tmp_path))
    assert categories(result.errors) == ["verification"]


# --- formatting and CLI tests ---


def test_format_validation_results_lists_errors_then_warnings():
    result = ValidationResult()
    result.error("numbering", "Duplicate task number: 1")
    result.warn("structure", "Missing optional section: ## Context")
    assert format_validation_results(result) == (
        "**Errors (blocking):**\n"
        "- [numbering] Duplicate task number: 1\n"
        "\n"
        "**Warnings:**\n"
        "- [structure] Missing optional section: ## Context"
    )


def test_format_validation_results_empty():
    assert format_validation_results(ValidationResult()) == ""


def test_main_json_output_and_exit_code(tmp_path: Path, capsys):
    plan = write_plan(tmp_path, VALID_PLAN.replace("- [ ] 2.", "- [ ] 1."))
    argv = ["plan-validator.py", str(plan), "--project-root", str(tmp_path), "--json"]
    with patch.object(mod.sys, "argv", argv):
        with pytest.raises(SystemExit) as exc:
            mod.main()
    assert exc.value.code == 1
    report = json.loads(capsys.readouterr().out)
    assert report["valid"] is False
    assert report["errors"][0]["message"] == "Duplicate task number: 1"
    assert report["progress"] == {"total": 3, "completed": 0, "is_complete": False}


def test_main_does_not_count_boxes_outside_plans_dir(tmp_path: Path, capsys):
    outside = tmp_path / "notes.md"
    outside.write_text("- [x] a\n- [ ] b\n")
    argv = ["plan-validator.py", str(outside), "--project-root", str(tmp_path), "--json"]
    with patch.object(mod.sys, "argv", argv):
        with pytest.raises(SystemExit) as exc:
            mod.main()
    assert exc.value.code == 1
    report = json.loads(capsys.readouterr().out)
    assert report["progress"] is None
    assert "outside the allowed directory" in report["errors"][0]["message"]

    argv = ["plan-validator.py", str(outside), "--project-root", str(tmp_path)]
    with patch.object(mod.sys, "argv", argv):
        with pytest.raises(SystemExit):
            mod.main()
    assert "tasks completed" not in capsys.readouterr().out


def test_main_text_output_for_valid_plan(tmp_path: Path, capsys):
    plan = write_plan(tmp_path, VALID_PLAN)
    argv = ["plan-validator.py", str(plan), "--project-root", str(tmp_path)]
    with patch.object(mod.sys, "argv", argv):
        with pytest.raises(SystemExit) as exc:
            mod.main()
    assert exc.value.code == 0
    assert "[VALID]" in capsys.readouterr().out
