"""DiffSentry: AI review of merge/pull request diffs."""

__version__ = "0.1.0"
