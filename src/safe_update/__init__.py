"""
safe-update - Controlled, reversible module updates.

This package coordinates version upgrades of independently deployed modules
(git submodules) inside a multi-module repository, deciding whether each
module is safe to ship with a weighted multi-gate quality score and rolling
back any update that fails validation.
"""

__version__ = "0.1.0"
