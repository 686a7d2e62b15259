"""Windows installation ISO builder.

Resumable, step-based servicing of install.wim/boot.wim with DISM, offline
registry edits and oscdimg authoring. Independent file removals, registry
writes and commands fan out through lib.parallel.
"""

__all__ = []
