"""MergeMonk: automated pull request reviews with suggested-patch follow-ups."""

__version__ = "0.1.0"
