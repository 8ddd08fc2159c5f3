"""
Domain features of the Ralph runner, one sub-package each.

  features/beads/       — work items: models, stores (JSON file, bd CLI),
                          loop tracker and its Postgres history
  features/resilience/  — circuit breakers around external collaborators

Sub-packages re-export their public API from `__init__.py`; activities and
workflows import from there or from the concrete module.
"""
