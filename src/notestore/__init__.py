"""
notestore - persistence core for a desktop note-taking application.

A write-behind cache coalesces rapid edits into debounced, verified writes
against either an in-process key-value store or a host file service, with a
one-time migration from the former to the latter.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("notestore")
except PackageNotFoundError:
    __version__ = "0.3.0"
