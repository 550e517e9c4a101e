"""
shipgate — pipeline orchestration and gate-evaluation engine.

Schedules interdependent delivery stages (build, versioning, tests, lint,
security scanners), runs each through a pluggable tool adapter, applies
operator-configured gate policies and seals one auditable ``PipelineRun``
record per run.

Importing the package has no side effects: no config loading and no logging
setup happen at import time.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
