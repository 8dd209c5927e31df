from .git import changed_files, current_branch, exact_tag, trigger_from_checkout

__all__ = ["changed_files", "current_branch", "exact_tag", "trigger_from_checkout"]
