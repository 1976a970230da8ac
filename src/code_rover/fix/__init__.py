"""Fix-and-review workflow: worktrees, review passes and the convergence loop."""
