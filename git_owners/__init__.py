"""git-owners: per-author commit counts and line changes for a git repository."""

__version__ = "0.1.0"
__author__ = "Uday Mungalpara"
__license__ = "MIT"

from git_owners.git_owners import main

__all__ = ["main"]
