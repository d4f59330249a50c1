#!/usr/bin/env python3
"""
Work Session Manager for Claude Code
Tracks which markdown plan is being worked on across sessions, decides what a
new session should do (start, resume, pick a plan, or report that everything
is done), and nudges idle sessions to keep going until the plan is checked off.

Usage:
    python scripts/work-session.py [--project-root DIR] [--verbose] COMMAND

Commands:
    start     Resolve /start-work for a session (request text on stdin or flags)
    continue  Idle check: print a continuation prompt if work remains
    pause     Suppress continuation prompts for the active plan
    resume    Re-enable continuation prompts
    status    Show the active plan and its progress
    plans     List plan files with their progress
    remind    Print the verification reminder for the active plan

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import argparse
import json
import os
import re
import subprocess
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

import yaml

# Import the plan scanner and validator from plan-validator
import importlib.util
_pv_spec = importlib.util.spec_from_file_location(
    "plan_validator",
    os.path.join(os.path.dirname(os.path.abspath(__file__)), "plan-validator.py"),
)
_pv_mod = importlib.util.module_from_spec(_pv_spec)
_pv_spec.loader.exec_module(_pv_mod)
PlanProgress = _pv_mod.PlanProgress
ValidationResult = _pv_mod.ValidationResult
validate_plan = _pv_mod.validate_plan
get_plan_progress = _pv_mod.get_plan_progress
format_validation_results = _pv_mod.format_validation_results
CLAUDE_DIR = _pv_mod.CLAUDE_DIR
PLANS_DIR = _pv_mod.PLANS_DIR
PLAN_EXTENSION = _pv_mod.PLAN_EXTENSION

# =============================================================================
# CONFIGURATION
# =============================================================================

WORK_STATE_FILE = "work-state.json"
WORK_STATE_PATH = f"{CLAUDE_DIR}/{WORK_STATE_FILE}"
SESSION_CONFIG_PATH = f"{CLAUDE_DIR}/work-session-config.yaml"

DEFAULT_EXECUTOR_AGENT = "executor"
DEFAULT_PLANNER_AGENT = "planner"
DEFAULT_REVIEW_AGENT = "code-reviewer"
DEFAULT_SECURITY_AGENT = "security-reviewer"
DEFAULT_GIT_TIMEOUT_SECONDS = 5

HOOK_START_WORK = "start-work"
HOOK_WORK_CONTINUATION = "work-continuation"
HOOK_VERIFICATION_REMINDER = "verification-reminder"
KNOWN_HOOKS = [HOOK_START_WORK, HOOK_WORK_CONTINUATION, HOOK_VERIFICATION_REMINDER]

# Markers inserted by the /start-work command template
SESSION_CONTEXT_MARKER = "<session-context>"
USER_REQUEST_PATTERN = re.compile(
    r"<user-request>\s*(.*?)\s*</user-request>", re.IGNORECASE | re.DOTALL
)

GIT_SHA_PATTERN = re.compile(r"^[0-9a-f]{40}$")

# Max chars per sidebar todo item (keeps the host's todo list readable)
MAX_TODO_LABEL_LENGTH = 35

# Global verbose flag
VERBOSE = False


def verbose_log(message: str, prefix: str = "VERBOSE") -> None:
    """Print a verbose log message if verbose mode is enabled."""
    if VERBOSE:
        timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        print(f"[{timestamp}] [{prefix}] {message}", file=sys.stderr, flush=True)


def warn(message: str) -> None:
    print(f"[WARNING] {message}", file=sys.stderr, flush=True)


@dataclass
class SessionConfig:
    """Project-level settings for work sessions.

    Parsed from .claude/work-session-config.yaml. Every key is optional;
    a missing or malformed file yields the defaults.
    """
    executor_agent: str = DEFAULT_EXECUTOR_AGENT
    planner_agent: str = DEFAULT_PLANNER_AGENT
    review_agent: str = DEFAULT_REVIEW_AGENT
    security_agent: str = DEFAULT_SECURITY_AGENT
    disabled_hooks: list[str] = field(default_factory=list)
    git_timeout_seconds: float = DEFAULT_GIT_TIMEOUT_SECONDS

    def is_hook_enabled(self, hook_name: str) -> bool:
        return hook_name not in self.disabled_hooks


def parse_session_config(raw: dict) -> SessionConfig:
    """Build a SessionConfig from a parsed YAML dict, ignoring bad values."""
    if not isinstance(raw, dict) or not raw:
        return SessionConfig()

    config = SessionConfig()
    for key in ("executor_agent", "planner_agent", "review_agent", "security_agent"):
        value = raw.get(key)
        if isinstance(value, str) and value.strip():
            setattr(config, key, value.strip())

    disabled = raw.get("disabled_hooks", [])
    if isinstance(disabled, list):
        config.disabled_hooks = [str(name) for name in disabled]
        unknown = [name for name in config.disabled_hooks if name not in KNOWN_HOOKS]
        if unknown:
            warn(f"Unknown hooks in disabled_hooks: {', '.join(unknown)}")

    timeout = raw.get("git_timeout_seconds")
    if isinstance(timeout, (int, float)) and not isinstance(timeout, bool) and timeout > 0:
        config.git_timeout_seconds = timeout

    return config


def load_session_config(project_root: str) -> SessionConfig:
    """Load .claude/work-session-config.yaml from the project root.

    Returns the defaults if the file doesn't exist or can't be parsed.
    """
    config_path = os.path.join(project_root, SESSION_CONFIG_PATH)
    if not os.path.isfile(config_path):
        return SessionConfig()
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
        warn(f"Failed to load {config_path}: {e}")
        return SessionConfig()
    return parse_session_config(raw if isinstance(raw, dict) else {})


# =============================================================================
# WORK STATE STORAGE
# =============================================================================

@dataclass
class WorkState:
    """The active plan for a project, stored at .claude/work-state.json.

    Optional fields left as None are not written, so state files created
    before a field existed read back the same way. Unknown keys are kept
    in `extra` and written back untouched.
    """
    active_plan: str
    started_at: str
    plan_name: str
    session_ids: list[str] = field(default_factory=list)
    agent: Optional[str] = None
    start_sha: Optional[str] = None
    paused: Optional[bool] = None
    extra: dict = field(default_factory=dict)

    @property
    def is_paused(self) -> bool:
        return bool(self.paused)

    def to_dict(self) -> dict:
        data = dict(self.extra)
        data.update({
            "active_plan": self.active_plan,
            "started_at": self.started_at,
            "session_ids": list(self.session_ids),
            "plan_name": self.plan_name,
        })
        if self.agent is not None:
            data["agent"] = self.agent
        if self.start_sha is not None:
            data["start_sha"] = self.start_sha
        if self.paused is not None:
            data["paused"] = self.paused
        return data

    @classmethod
    def from_dict(cls, data: dict) -> Optional["WorkState"]:
        """Build a WorkState from parsed JSON, or None if it isn't usable."""
        if not isinstance(data, dict):
            return None
        active_plan = data.get("active_plan")
        if not isinstance(active_plan, str) or not active_plan:
            return None

        session_ids: list[str] = []
        raw_ids = data.get("session_ids")
        if isinstance(raw_ids, list):
            for session_id in raw_ids:
                if isinstance(session_id, str) and session_id not in session_ids:
                    session_ids.append(session_id)

        known = {"active_plan", "started_at", "session_ids", "plan_name",
                 "agent", "start_sha", "paused"}
        started_at = data.get("started_at")
        plan_name = data.get("plan_name")
        agent = data.get("agent")
        start_sha = data.get("start_sha")
        paused = data.get("paused")
        return cls(
            active_plan=active_plan,
            started_at=started_at if isinstance(started_at, str) else "",
            plan_name=plan_name if isinstance(plan_name, str) and plan_name else get_plan_name(active_plan),
            session_ids=session_ids,
            agent=agent if isinstance(agent, str) else None,
            start_sha=start_sha if isinstance(start_sha, str) else None,
            paused=paused if isinstance(paused, bool) else None,
            extra={k: v for k, v in data.items() if k not in known},
        )


def get_plan_name(plan_path: str) -> str:
    """Plan name from a file path: base name without the .md extension."""
    name = os.path.basename(plan_path)
    if name.endswith(PLAN_EXTENSION):
        name = name[:-len(PLAN_EXTENSION)]
    return name


def work_state_path(project_root: str) -> str:
    return os.path.join(project_root, WORK_STATE_PATH)


def read_work_state(project_root: str) -> Optional[WorkState]:
    """Read the work state file.

    Returns None if the file is missing, unparseable, or has no active_plan.
    """
    state_path = work_state_path(project_root)
    if not os.path.exists(state_path):
        return None
    try:
        with open(state_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError, RecursionError) as e:
        verbose_log(f"Ignoring unreadable work state {state_path}: {e}", "STATE")
        return None
    return WorkState.from_dict(data)


def write_work_state(project_root: str, state: WorkState) -> bool:
    """Write the work state file, creating .claude/ if needed.

    Returns True on success. Failures are reported, not raised.
    """
    state_path = work_state_path(project_root)
    try:
        os.makedirs(os.path.dirname(state_path), exist_ok=True)
        with open(state_path, "w", encoding="utf-8") as f:
            json.dump(state.to_dict(), f, indent=2)
        verbose_log(f"Wrote work state for plan '{state.plan_name}'", "STATE")
        return True
    except (OSError, TypeError, ValueError) as e:
        warn(f"Failed to write work state {state_path}: {e}")
        return False


def clear_work_state(project_root: str) -> bool:
    """Delete the work state file. A missing file counts as success."""
    state_path = work_state_path(project_root)
    try:
        if os.path.exists(state_path):
            os.remove(state_path)
            verbose_log(f"Cleared work state {state_path}", "STATE")
        return True
    except OSError as e:
        warn(f"Failed to clear work state {state_path}: {e}")
        return False


def append_session_id(project_root: str, session_id: str) -> Optional[WorkState]:
    """Record a session against the active plan (once).

    Returns the current state, or None if there is no active plan.
    """
    state = read_work_state(project_root)
    if state is None:
        return None
    if session_id not in state.session_ids:
        state.session_ids.append(session_id)
        write_work_state(project_root, state)
    return state


def get_head_sha(project_root: str, timeout: float = DEFAULT_GIT_TIMEOUT_SECONDS) -> Optional[str]:
    """Current git HEAD SHA of the project, or None.

    Any failure (git missing, not a repository, no commits, timeout) yields None.
    """
    try:
        result = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            cwd=project_root,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=True,
        )
    except (OSError, subprocess.SubprocessError) as e:
        verbose_log(f"No git HEAD for {project_root}: {e}", "GIT")
        return None

    sha = result.stdout.strip()
    if not GIT_SHA_PATTERN.match(sha):
        verbose_log(f"Ignoring unexpected rev-parse output: {sha!r}", "GIT")
        return None
    return sha


def create_work_state(
    plan_path: str,
    session_id: str,
    agent: Optional[str] = None,
    project_root: Optional[str] = None,
    now: Optional[datetime] = None,
    git_timeout: float = DEFAULT_GIT_TIMEOUT_SECONDS,
) -> WorkState:
    """Create (but don't write) a fresh WorkState for a plan file.

    start_sha is recorded only when project_root is given and is a git
    working tree.
    """
    timestamp = (now or datetime.now(timezone.utc)).isoformat()
    start_sha = get_head_sha(project_root, git_timeout) if project_root else None
    return WorkState(
        active_plan=plan_path,
        started_at=timestamp,
        plan_name=get_plan_name(plan_path),
        session_ids=[session_id],
        agent=agent,
        start_sha=start_sha,
    )


def find_plans(project_root: str) -> list[str]:
    """Plan files in .claude/plans/, newest modification time first.

    Returns absolute paths, or an empty list if the directory is missing
    or unreadable.
    """
    plans_dir = os.path.abspath(os.path.join(project_root, PLANS_DIR))
    try:
        paths = [
            os.path.join(plans_dir, name)
            for name in sorted(os.listdir(plans_dir))
            if name.endswith(PLAN_EXTENSION)
        ]
        paths = [path for path in paths if os.path.isfile(path)]
        return sorted(paths, key=os.path.getmtime, reverse=True)
    except OSError as e:
        verbose_log(f"No plans found in {plans_dir}: {e}", "PLANS")
        return []


def set_paused(project_root: str, paused: bool) -> bool:
    state = read_work_state(project_root)
    if state is None:
        return False
    state.paused = paused
    return write_work_state(project_root, state)


def pause_work(project_root: str) -> bool:
    """Mark the active plan as paused. False if there is no active plan."""
    return set_paused(project_root, True)


def resume_work(project_root: str) -> bool:
    """Clear the paused flag. False if there is no active plan."""
    return set_paused(project_root, False)


# =============================================================================
# SESSION DECISIONS
# =============================================================================

DECISION_NO_COMMAND = "no_command"
DECISION_EXPLICIT_PLAN = "explicit_plan"
DECISION_RESUMING = "resuming"
DECISION_DISCOVER_NONE = "discover_none"
DECISION_DISCOVER_ONE = "discover_one"
DECISION_DISCOVER_MANY = "discover_many"
DECISION_ALL_COMPLETE = "all_complete"


@dataclass
class PlanCandidate:
    """A plan file together with its progress at decision time."""
    path: str
    name: str
    progress: PlanProgress


@dataclass
class SessionDecision:
    """What a /start-work invocation should do.

    `kind` selects the branch; the other fields carry what that branch needs:
    explicit_plan sets requested_name and plan (None when nothing matched),
    resuming sets state and plan, discover_one sets plan, and
    explicit_plan/discover_many list the incomplete plans in candidates.
    """
    kind: str
    requested_name: Optional[str] = None
    plan: Optional[PlanCandidate] = None
    candidates: list[PlanCandidate] = field(default_factory=list)
    state: Optional[WorkState] = None


@dataclass
class StartWorkResult:
    """Context to inject into the session and the agent to switch to."""
    context_injection: Optional[str] = None
    switch_agent: Optional[str] = None


def extract_plan_name(request_text: str) -> Optional[str]:
    """Plan name from the <user-request> block, or None if it is empty."""
    match = USER_REQUEST_PATTERN.search(request_text)
    if not match:
        return None
    name = match.group(1).strip()
    return name or None


def find_plan_by_name(candidates: list[PlanCandidate], requested_name: str) -> Optional[PlanCandidate]:
    """Exact case-insensitive name match first, then substring match."""
    wanted = requested_name.lower()
    for candidate in candidates:
        if candidate.name.lower() == wanted:
            return candidate
    for candidate in candidates:
        if wanted in candidate.name.lower():
            return candidate
    return None


def decide_session(
    request_text: str,
    existing_state: Optional[WorkState],
    active_progress: Optional[PlanProgress],
    candidates: list[PlanCandidate],
) -> SessionDecision:
    """Decide what a session should do. Touches no files.

    Args:
        request_text: The expanded /start-work command text.
        existing_state: The stored WorkState, if any.
        active_progress: Progress of existing_state's plan (ignored without state).
        candidates: Every discovered plan, newest first.

    Returns:
        A SessionDecision; see the DECISION_* constants for the kinds.
    """
    if SESSION_CONTEXT_MARKER not in request_text:
        return SessionDecision(kind=DECISION_NO_COMMAND)

    incomplete = [c for c in candidates if not c.progress.is_complete]

    requested_name = extract_plan_name(request_text)
    if requested_name:
        return SessionDecision(
            kind=DECISION_EXPLICIT_PLAN,
            requested_name=requested_name,
            plan=find_plan_by_name(candidates, requested_name),
            candidates=incomplete,
        )

    if existing_state is not None and active_progress is not None and not active_progress.is_complete:
        return SessionDecision(
            kind=DECISION_RESUMING,
            plan=PlanCandidate(existing_state.active_plan, existing_state.plan_name, active_progress),
            state=existing_state,
        )

    if not candidates:
        return SessionDecision(kind=DECISION_DISCOVER_NONE)
    if not incomplete:
        return SessionDecision(kind=DECISION_ALL_COMPLETE)
    if len(incomplete) == 1:
        return SessionDecision(kind=DECISION_DISCOVER_ONE, plan=incomplete[0])
    return SessionDecision(kind=DECISION_DISCOVER_MANY, candidates=incomplete)


def gather_candidates(project_root: str) -> list[PlanCandidate]:
    return [
        PlanCandidate(path=path, name=get_plan_name(path), progress=get_plan_progress(path))
        for path in find_plans(project_root)
    ]


def handle_start_work(
    request_text: str,
    session_id: str,
    project_root: str,
    config: Optional[SessionConfig] = None,
) -> StartWorkResult:
    """Resolve a /start-work request for a session.

    Returns an empty StartWorkResult when the text is not a /start-work
    command. Otherwise the result always switches to the executor agent,
    with a context message explaining what was started, resumed, or why
    nothing could be.
    """
    if SESSION_CONTEXT_MARKER not in request_text:
        return StartWorkResult()

    config = config or load_session_config(project_root)
    existing_state = read_work_state(project_root)
    active_progress = get_plan_progress(existing_state.active_plan) if existing_state else None
    candidates = gather_candidates(project_root)

    decision = decide_session(request_text, existing_state, active_progress, candidates)
    verbose_log(f"Session {session_id}: decision={decision.kind}", "START")
    return execute_decision(decision, session_id, project_root, config)


def execute_decision(
    decision: SessionDecision,
    session_id: str,
    project_root: str,
    config: SessionConfig,
) -> StartWorkResult:
    """Apply a SessionDecision: validate, update work state, build the message."""
    kind = decision.kind

    if kind == DECISION_NO_COMMAND:
        return StartWorkResult()

    if kind == DECISION_EXPLICIT_PLAN:
        if decision.plan is None:
            message = build_not_found_message(decision.requested_name or "", decision.candidates)
        elif decision.plan.progress.is_complete:
            message = build_already_complete_message(decision.plan, config)
        else:
            message = start_plan(decision.plan, session_id, project_root, config, replace_existing=True)
    elif kind == DECISION_RESUMING:
        message = resume_plan(decision.plan, decision.state, session_id, project_root)
    elif kind == DECISION_DISCOVER_NONE:
        message = (
            "## No Plans Found\n"
            f"No plan files found at `{PLANS_DIR}/`.\n"
            f"Tell the user to switch to the {config.planner_agent} agent to create a work plan first."
        )
    elif kind == DECISION_ALL_COMPLETE:
        message = (
            "## All Plans Complete\n"
            "All existing plans have been completed.\n"
            f"Tell the user to switch to the {config.planner_agent} agent to create a new plan."
        )
    elif kind == DECISION_DISCOVER_ONE:
        message = start_plan(decision.plan, session_id, project_root, config, replace_existing=False)
    elif kind == DECISION_DISCOVER_MANY:
        message = build_multiple_plans_message(decision.candidates)
    else:
        raise ValueError(f"Unknown session decision: {kind}")

    return StartWorkResult(context_injection=message, switch_agent=config.executor_agent)


def start_plan(
    plan: PlanCandidate,
    session_id: str,
    project_root: str,
    config: SessionConfig,
    replace_existing: bool,
) -> str:
    """Validate a plan and, if it passes, make it the active plan."""
    validation = validate_plan(plan.path, project_root)
    if not validation.valid:
        verbose_log(f"Plan '{plan.name}' failed validation", "START")
        return build_validation_failed_message(
            f'The plan "{plan.name}" has structural issues that must be fixed before execution can begin.',
            validation,
            "Tell the user to fix these issues in the plan file and try again.",
        )

    if replace_existing:
        clear_work_state(project_root)
    state = create_work_state(
        plan.path,
        session_id,
        agent=config.executor_agent,
        project_root=project_root,
        git_timeout=config.git_timeout_seconds,
    )
    write_work_state(project_root, state)

    return with_warnings(build_fresh_context(plan.path, plan.name, plan.progress), validation)


def resume_plan(
    plan: PlanCandidate,
    state: WorkState,
    session_id: str,
    project_root: str,
) -> str:
    """Re-validate the active plan and pick it up in this session.

    A plan that no longer validates is dropped from the work state.
    """
    validation = validate_plan(plan.path, project_root)
    if not validation.valid:
        clear_work_state(project_root)
        return build_validation_failed_message(
            f'The active plan "{state.plan_name}" has structural issues. Work state has been cleared.',
            validation,
            "Tell the user to fix the plan file and run /start-work again.",
        )

    append_session_id(project_root, session_id)
    if state.is_paused:
        resume_work(project_root)
    return with_warnings(build_resume_context(plan.path, state.plan_name, plan.progress), validation)


# =============================================================================
# MESSAGES
# =============================================================================

def with_warnings(context: str, validation: ValidationResult) -> str:
    if not validation.warnings:
        return context
    return f"{context}\n\n### Validation Warnings\n{format_validation_results(validation)}"


def build_validation_failed_message(summary: str, validation: ValidationResult, instruction: str) -> str:
    return (
        f"## Plan Validation Failed\n{summary}\n\n"
        f"{format_validation_results(validation)}\n\n"
        f"{instruction}"
    )


def build_not_found_message(requested_name: str, incomplete: list[PlanCandidate]) -> str:
    if incomplete:
        listing = "\n".join(f"  - {plan.name}" for plan in incomplete)
    else:
        listing = "  (none)"
    return (
        "## Plan Not Found\n"
        f'No plan matching "{requested_name}" was found.\n\n'
        f"Available incomplete plans:\n{listing}\n\n"
        "Tell the user which plans are available and ask them to specify one."
    )


def build_already_complete_message(plan: PlanCandidate, config: SessionConfig) -> str:
    return (
        "## Plan Already Complete\n"
        f'The plan "{plan.name}" has all {plan.progress.total} tasks completed.\n'
        "Tell the user this plan is already done and suggest creating a new one "
        f"with the {config.planner_agent} agent."
    )


def build_multiple_plans_message(incomplete: list[PlanCandidate]) -> str:
    listing = "\n".join(
        f"  - **{plan.name}** ({plan.progress.completed}/{plan.progress.total} tasks done)"
        for plan in incomplete
    )
    return (
        "## Multiple Plans Found\n"
        f"There are {len(incomplete)} incomplete plans:\n{listing}\n\n"
        "Ask the user which plan to work on. "
        "They can run `/start-work [plan-name]` to select one."
    )


def build_fresh_context(plan_path: str, plan_name: str, progress: PlanProgress) -> str:
    return f"""## Starting Plan: {plan_name}
**Plan file**: {plan_path}
**Progress**: {progress.completed}/{progress.total} tasks completed

Read the plan file now and begin executing from the first unchecked `- [ ]` task.

**SIDEBAR TODOS - DO THIS FIRST:**
Before starting any work, use todowrite to populate the sidebar:
1. Create a summary todo (in_progress): "{plan_name} {progress.completed}/{progress.total}"
2. Create a todo for the first unchecked task (in_progress)
3. Create todos for the next 2-3 tasks (pending)
Keep each todo under {MAX_TODO_LABEL_LENGTH} chars. Update as you complete tasks."""


def build_resume_context(plan_path: str, plan_name: str, progress: PlanProgress) -> str:
    remaining = progress.remaining
    plural = "" if remaining == 1 else "s"
    return f"""## Resuming Plan: {plan_name}
**Plan file**: {plan_path}
**Progress**: {progress.completed}/{progress.total} tasks completed
**Status**: RESUMING - continuing from where the previous session left off.

Read the plan file now and continue from the first unchecked `- [ ]` task.

**SIDEBAR TODOS - RESTORE STATE:**
Previous session's todos are lost. Use todowrite to restore the sidebar:
1. Create a summary todo (in_progress): "{plan_name} {progress.completed}/{progress.total}"
2. Create a todo for the next unchecked task (in_progress)
3. Create todos for the following 2-3 tasks (pending)
Keep each todo under {MAX_TODO_LABEL_LENGTH} chars. {remaining} task{plural} remaining."""


# =============================================================================
# CONTINUATION
# =============================================================================

@dataclass
class ContinuationResult:
    """Prompt to inject into an idle session, if any."""
    continuation_prompt: Optional[str] = None
    switch_agent: Optional[str] = None


def check_continuation(
    session_id: str,
    project_root: str,
    config: Optional[SessionConfig] = None,
) -> ContinuationResult:
    """Decide whether an idle session should keep working.

    Returns no prompt when there is no active plan or it is paused. A plan
    with no checkboxes (or a deleted plan file) drops the stale work state.
    A finished plan clears the work state and returns a handoff prompt;
    otherwise the prompt tells the session to continue with the next task.
    """
    state = read_work_state(project_root)
    if state is None:
        return ContinuationResult()

    if state.is_paused:
        verbose_log(f"Plan '{state.plan_name}' is paused; no continuation", "CONTINUE")
        return ContinuationResult()

    config = config or load_session_config(project_root)
    progress = get_plan_progress(state.active_plan)

    if progress.total == 0:
        verbose_log(f"Plan '{state.plan_name}' has no tasks; clearing stale state", "CONTINUE")
        clear_work_state(project_root)
        return ContinuationResult()

    if progress.is_complete:
        verbose_log(f"Plan '{state.plan_name}' complete in session {session_id}", "CONTINUE")
        clear_work_state(project_root)
        return ContinuationResult(
            continuation_prompt=build_handoff_prompt(state, progress, config),
        )

    return ContinuationResult(
        continuation_prompt=build_continuation_prompt(state, progress),
        switch_agent=state.agent or config.executor_agent,
    )


def build_continuation_prompt(state: WorkState, progress: PlanProgress) -> str:
    return f"""You have an active work plan with incomplete tasks. Continue working.

**Plan**: {state.plan_name}
**File**: {state.active_plan}
**Progress**: {progress.completed}/{progress.total} tasks completed ({progress.remaining} remaining)

1. Read the plan file NOW to check exact current progress
2. Find the first unchecked `- [ ]` task
3. Execute it, verify it, mark `- [ ]` -> `- [x]`
4. Continue to the next task
5. Do not stop until all tasks are complete

The sidebar todo list is not saved between sessions. If it is empty, rebuild it:
a summary todo "{state.plan_name} {progress.completed}/{progress.total}" plus the next 2-3 unchecked tasks."""


def build_handoff_prompt(state: WorkState, progress: PlanProgress, config: SessionConfig) -> str:
    return f"""## Plan Complete: {state.plan_name}
All {progress.total} tasks in **{state.plan_name}** are checked off. The work state has been cleared.
**Plan file**: {state.active_plan}

Recommended next steps:
1. Delegate a code review of the changes to the `{config.review_agent}` agent
2. Delegate a security audit to the `{config.security_agent}` agent if anything touches auth, secrets or input handling
3. Re-run every item in the plan's `## Verification` section and report the results
4. Give the user a short summary of what was delivered and anything left open"""


def build_verification_reminder(
    plan_name: Optional[str] = None,
    progress: Optional[PlanProgress] = None,
    config: Optional[SessionConfig] = None,
) -> str:
    """Reminder to verify a task before checking it off.

    Includes the plan name and progress only when both are known.
    """
    config = config or SessionConfig()
    plan_context = ""
    if plan_name and progress is not None:
        plan_context = f"\n**Plan**: {plan_name} ({progress.completed}/{progress.total} tasks done)"

    return f"""## Verification Required
{plan_context}

Before marking this task complete, verify the work:

1. **Read the changes**: `git diff --stat` then Read each changed file
2. **Run checks**: Run relevant tests, check for linting/type errors
3. **Validate behavior**: Does the code actually do what was requested?
4. **Gate decision**: Can you explain what every changed line does?

If uncertain about quality, delegate to the `{config.review_agent}` agent for a formal review.

MANDATORY: If changes touch auth, crypto, certificates, tokens, signatures, or input validation, delegate to the `{config.security_agent}` agent for a security audit.

Only mark complete when ALL checks pass."""


# =============================================================================
# COMMAND TEMPLATE
# =============================================================================

START_WORK_INSTRUCTION = """The user has invoked /start-work to begin executing a plan.

## What To Do

1. The system has injected plan context below (plan path, progress, instructions).
2. Read the plan file and find the first unchecked `- [ ]` task.
3. Work through the tasks in order, verifying each one before marking it `- [x]`.
4. Report progress after each task and give a final summary when all tasks are done."""


def build_start_work_request(
    session_id: str,
    arguments: str = "",
    now: Optional[datetime] = None,
) -> str:
    """Expand the /start-work command template for a session."""
    timestamp = (now or datetime.now(timezone.utc)).isoformat()
    return (
        f"<command-instruction>\n{START_WORK_INSTRUCTION}\n</command-instruction>\n"
        f"{SESSION_CONTEXT_MARKER}Session ID: {session_id}  Timestamp: {timestamp}</session-context>\n"
        f"<user-request>{arguments}</user-request>"
    )


# =============================================================================
# CLI
# =============================================================================

def progress_dict(progress: PlanProgress) -> dict:
    return {
        "total": progress.total,
        "completed": progress.completed,
        "is_complete": progress.is_complete,
    }


def default_session_id() -> str:
    return f"cli-{datetime.now().strftime('%Y%m%d-%H%M%S')}"


def run_command(args: argparse.Namespace) -> dict:
    """Run one CLI command and return the JSON-serializable output."""
    root = os.path.abspath(args.project_root)
    config = load_session_config(root)

    if args.command == "start":
        if not config.is_hook_enabled(HOOK_START_WORK):
            return {"context_injection": None, "switch_agent": None}
        if args.request is not None:
            request_text = args.request
        elif args.plan is not None or sys.stdin.isatty():
            request_text = build_start_work_request(args.session, args.plan or "")
        else:
            request_text = sys.stdin.read()
        result = handle_start_work(request_text, args.session, root, config)
        return {"context_injection": result.context_injection, "switch_agent": result.switch_agent}

    if args.command == "continue":
        if not config.is_hook_enabled(HOOK_WORK_CONTINUATION):
            return {"continuation_prompt": None, "switch_agent": None}
        result = check_continuation(args.session, root, config)
        return {"continuation_prompt": result.continuation_prompt, "switch_agent": result.switch_agent}

    if args.command == "pause":
        return {"ok": pause_work(root)}

    if args.command == "resume":
        return {"ok": resume_work(root)}

    if args.command == "status":
        state = read_work_state(root)
        if state is None:
            return {"active": False}
        return {
            "active": True,
            "state": state.to_dict(),
            "progress": progress_dict(get_plan_progress(state.active_plan)),
        }

    if args.command == "plans":
        return {
            "plans": [
                {"name": c.name, "path": c.path, "progress": progress_dict(c.progress)}
                for c in gather_candidates(root)
            ]
        }

    if args.command == "remind":
        if not config.is_hook_enabled(HOOK_VERIFICATION_REMINDER):
            return {"verification_prompt": None}
        state = read_work_state(root)
        if state is None:
            return {"verification_prompt": build_verification_reminder(config=config)}
        progress = get_plan_progress(state.active_plan)
        return {"verification_prompt": build_verification_reminder(state.plan_name, progress, config)}

    raise ValueError(f"Unknown command: {args.command}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Track and resume markdown work plans across sessions"
    )
    parser.add_argument(
        "--project-root",
        default=".",
        help="Project root directory (default: current directory)"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose output with detailed tracing (on stderr)"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    start = subparsers.add_parser("start", help="Resolve a /start-work request")
    start.add_argument("--session", default=default_session_id(), help="Session ID")
    source = start.add_mutually_exclusive_group()
    source.add_argument("--request", help="Full request text (default: read stdin)")
    source.add_argument("--plan", metavar="NAME", help="Plan name to start (builds the request text)")

    cont = subparsers.add_parser("continue", help="Idle check for a session")
    cont.add_argument("--session", default=default_session_id(), help="Session ID")

    subparsers.add_parser("pause", help="Pause continuation prompts")
    subparsers.add_parser("resume", help="Resume continuation prompts")
    subparsers.add_parser("status", help="Show the active plan and progress")
    subparsers.add_parser("plans", help="List plans with progress")
    subparsers.add_parser("remind", help="Print the verification reminder")
    return parser


def main(argv: Optional[list[str]] = None):
    global VERBOSE

    args = build_parser().parse_args(argv)
    VERBOSE = args.verbose
    _pv_mod.VERBOSE = args.verbose

    if not os.path.isdir(args.project_root):
        print(f"Error: Project root not found: {args.project_root}", file=sys.stderr)
        sys.exit(1)

    print(json.dumps(run_command(args), indent=2))


if __name__ == "__main__":
    main()
