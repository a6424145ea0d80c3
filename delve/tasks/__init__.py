"""Delve background task registry.

Tasks registered here are picked up by the Shadows Worker subprocess launched via
``delve worker``.  The CLI's ``run`` / ``multi`` commands drive runs in-process
and do not go through Shadows.

Public surface
--------------
``delve_tasks``  — task collection consumed by ``shadow.register_collection``
"""

from .research import multi_provider_research_run, research_run

# Task collection path consumed by the shadows Worker:
#   shadow.register_collection("delve.tasks:delve_tasks")
delve_tasks = [research_run, multi_provider_research_run]

__all__ = ["research_run", "multi_provider_research_run", "delve_tasks"]
