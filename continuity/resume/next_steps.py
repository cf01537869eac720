"""Actionable next steps for a resumed instance.

Rule groups run in order (epic, VCS, tests) and each contributes zero or
more steps. The result is deduplicated, capped, and never empty.
"""

from continuity.core.models import EpicStatus, WorkSnapshot

FALLBACK_STEP = "Verify project state (git status, test suite) and continue from the last action"


def _epic_steps(state: WorkSnapshot) -> list[str]:
    epic = state.epic
    if epic is None:
        return []
    label = f"{epic.epic_id} ({epic.name})" if epic.name else epic.epic_id

    if epic.status == EpicStatus.COMPLETED:
        steps = [f"Epic {label} completed - ready to merge"]
        if state.pr_number is not None:
            steps.append(f"Verify PR #{state.pr_number} passes CI")
            steps.append(f"Merge PR #{state.pr_number}")
        else:
            steps.append("Create a PR for the completed work")
        return steps

    if epic.status == EpicStatus.IN_PROGRESS:
        steps = [f"Continue work on {label}"]
        if state.tests and state.tests.failed:
            steps.append(f"Fix {state.tests.failed} failing tests")
        return steps

    if epic.status == EpicStatus.FAILED:
        last_error = getattr(state, "last_error", None)
        if last_error:
            return [f"Investigate failure of {label}: {last_error}"]
        return [f"Investigate failure of {label}"]

    return [f"Review the plan for {label} and start implementation"]


def _vcs_steps(state: WorkSnapshot) -> list[str]:
    git = state.git
    if git is None:
        return []
    steps = []
    if git.uncommitted:
        message = f"wip: {state.epic.epic_id}" if state.epic else "chore: resume work"
        steps.append(
            f"Commit {git.uncommitted} uncommitted change(s): "
            f'git add -A && git commit -m "{message}"'
        )
    if git.commits_ahead:
        target = f"git push origin {git.branch}" if git.branch else "git push"
        steps.append(f"Push {git.commits_ahead} unpushed commit(s): {target}")
    return steps


def _test_steps(state: WorkSnapshot) -> list[str]:
    tests = state.tests
    if tests is None or tests.total == 0:
        return []
    if tests.failed:
        return [f"Fix the {tests.failed} failing test(s), then rerun the suite"]
    return [f"All {tests.passed} tests passing - confirm on the current tree before continuing"]


class NextStepGenerator:
    """Pure function of a work snapshot."""

    RULES = (_epic_steps, _vcs_steps, _test_steps)

    def __init__(self, max_steps: int = 5):
        if max_steps < 1:
            raise ValueError("max_steps must be at least 1")
        self.max_steps = max_steps

    def generate(self, work_state: WorkSnapshot) -> list[str]:
        steps: list[str] = []
        for rule in self.RULES:
            for step in rule(work_state):
                if step not in steps:
                    steps.append(step)
        if not steps:
            steps.append(FALLBACK_STEP)
        return steps[: self.max_steps]
