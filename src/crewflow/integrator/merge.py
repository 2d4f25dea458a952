"""Branch merger: fold parallel subtask branches into one integration branch."""

from __future__ import annotations

import logging
import re
from pathlib import Path

from crewflow.core.exceptions import VersionControlError
from crewflow.schemas.status import MergeResult, MergeStatus
from crewflow.utils.git import (
    abort_merge,
    branch_exists,
    create_branch,
    delete_branch,
    get_conflicted_files,
    get_current_commit,
    is_conflict_output,
    merge_branch,
)
from crewflow.worktree.manager import WorktreeManager

logger = logging.getLogger("crewflow.integrator.merge")

_CONFLICT_LINE = re.compile(r"CONFLICT \([^)]*\): (?:Merge conflict in )?(\S+)")


def integration_branch_name(prefix: str, task_id: str) -> str:
    """Branch naming convention for a task's integration branch."""
    return f"{prefix}/{task_id}/integration"


def _conflicts_from_output(output: str) -> list[str]:
    return sorted({m.group(1) for m in _CONFLICT_LINE.finditer(output)})


class BranchMerger:
    """Sequential three-way merge of branches in planner order.

    Merges happen in a dedicated worktree checked out on the integration
    branch, so the user's checkout is never touched. The first fold that
    leaves conflict markers stops the run: the merge is aborted, the
    integration branch keeps the folds that succeeded, and the conflicting
    branch plus the unfolded remainder are reported. Nothing is ever
    resolved automatically.
    """

    def __init__(
        self,
        repo_root: Path,
        branch_prefix: str = "crewflow",
        worktree_dir: str = ".worktrees",
    ):
        self.repo_root = Path(repo_root)
        self.branch_prefix = branch_prefix
        self.worktrees = WorktreeManager(repo_root=self.repo_root, worktree_dir=worktree_dir)

    def merge(self, task_id: str, base_branch: str, branches: list[str]) -> MergeResult:
        """Fold ``branches`` into a fresh integration branch cut from ``base_branch``.

        Args:
            task_id: Task the branches belong to
            base_branch: Branch the integration starts from
            branches: Successful subtask branches, in planner order

        Returns:
            MergeResult, clean or conflicted

        Raises:
            VersionControlError: A ref is missing or git failed for a reason
                other than a conflict
        """
        if get_current_commit(self.repo_root, base_branch) is None:
            raise VersionControlError(f"Base branch not found: {base_branch}")
        for branch in branches:
            if not branch_exists(branch, cwd=self.repo_root):
                raise VersionControlError(f"Branch not found: {branch}")

        integration = integration_branch_name(self.branch_prefix, task_id)
        worktree_name = f"merge-{task_id}"

        # A leftover integration worktree would pin the branch
        if self.worktrees.worktree_exists(worktree_name):
            self.worktrees.delete_worktree(worktree_name, force=True)

        result = create_branch(integration, cwd=self.repo_root, start_point=base_branch, force=True)
        if not result.ok:
            raise VersionControlError(f"Could not create {integration}", result.stderr)

        path, result = self.worktrees.attach_worktree(worktree_name, integration)
        if not result.ok:
            raise VersionControlError(f"Could not check out {integration}", result.stderr)

        try:
            return self._fold(task_id, base_branch, integration, branches, path)
        finally:
            self.worktrees.delete_worktree(worktree_name, force=True)

    def _fold(
        self,
        task_id: str,
        base_branch: str,
        integration: str,
        branches: list[str],
        cwd: Path,
    ) -> MergeResult:
        merged: list[str] = []

        for position, branch in enumerate(branches):
            result = merge_branch(branch, cwd=cwd, message=f"Merge {branch} into {integration}")
            if result.ok:
                merged.append(branch)
                logger.info("Merged %s into %s", branch, integration)
                continue

            if not is_conflict_output(result):
                abort_merge(cwd)
                raise VersionControlError(f"Merging {branch} failed", result.output)

            conflicted = get_conflicted_files(cwd) or _conflicts_from_output(result.output)
            abort_merge(cwd)
            logger.warning("Conflict merging %s: %s", branch, ", ".join(conflicted))

            return MergeResult(
                task_id=task_id,
                base_branch=base_branch,
                merged_branches=merged,
                status=MergeStatus.CONFLICTED,
                conflicted_files=conflicted or ["<unknown>"],
                merged_branch_name=None,
                integration_branch=integration,
                conflicting_branch=branch,
                unmerged_branches=list(branches[position:]),
            )

        return MergeResult(
            task_id=task_id,
            base_branch=base_branch,
            merged_branches=merged,
            status=MergeStatus.CLEAN,
            merged_branch_name=integration,
            integration_branch=integration,
        )

    def cleanup_branches(self, branches: list[str]) -> list[str]:
        """Delete merged subtask branches. Failures are logged, not raised.

        Returns:
            Branches that were deleted
        """
        deleted: list[str] = []
        for branch in branches:
            result = delete_branch(branch, cwd=self.repo_root, force=True)
            if result.ok:
                deleted.append(branch)
                logger.debug("Deleted %s", branch)
            else:
                logger.warning("Could not delete %s: %s", branch, result.stderr.strip())
        return deleted


def format_conflict_report(result: MergeResult, subtask_ids: dict[str, str] | None = None) -> str:
    """Human escalation text for a conflicted merge.

    Args:
        result: Conflicted merge result
        subtask_ids: Optional branch -> subtask id mapping

    Returns:
        Plain-text report naming files, branches and next steps
    """
    if result.status != MergeStatus.CONFLICTED:
        return (
            f"Merge of {len(result.merged_branches)} branch(es) "
            f"into {result.merged_branch_name} is clean."
        )

    lines = ["MERGE CONFLICTS DETECTED", ""]
    lines.append(f"Branch: {result.conflicting_branch}")
    if subtask_ids and result.conflicting_branch in subtask_ids:
        lines.append(f"Subtask: {subtask_ids[result.conflicting_branch]}")
    lines.append("Conflicted files:")
    lines.extend(f"  - {f}" for f in result.conflicted_files)
    lines.append("")

    if result.merged_branches:
        lines.append(f"Partially integrated on {result.integration_branch}:")
        lines.extend(f"  - {b}" for b in result.merged_branches)
    lines.append("Not merged:")
    lines.extend(f"  - {b}" for b in result.unmerged_branches)
    lines.append("")

    lines.append("To resolve:")
    lines.append(
        f"1. Check out {result.integration_branch} and merge the remaining branches by hand"
    )
    lines.append("2. Or run the task again with sequential execution")
    lines.append("3. Or split the task differently to avoid overlapping files")

    return "\n".join(lines)
