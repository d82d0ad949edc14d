"""
knowledge-bootstrap — tiered dimension scheduler

Runs a fixed catalog of analysis dimensions through an Explore/Format agent
pipeline, tier by tier, with bounded parallelism, checkpointed resume and
cooperative session cancellation.

Importing the package has no side effects: no config loading and no
logging initialization.
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
