"""Git worktree provisioning.

Every workflow instance gets an isolated worktree and branch derived from
its task. Existing worktrees are reused on resume.
"""

from src.workflow.provisioner.worktree import (
    WorktreeProvisioner,
    WorktreeSpec,
    slugify,
)

__all__ = ["WorktreeProvisioner", "WorktreeSpec", "slugify"]
