"""Mission orchestration over a SQLite task store.

The package is layered bottom-up:

- ``repository`` persists missions, agents, tasks and their event trail, and
  exposes compare-and-update writes keyed on a version column.
- ``state_machine``, ``retry``, ``audit`` and ``graph`` hold the task rules:
  legal transitions, the retry budget and its audit escalation, and
  dependency ordering.
- ``coordinator`` composes them into mission-level operations used by the CLI
  (``controllers``) and the HTTP API (``mission_hq.api``).

Every status change is a conditional update, so two workers racing for the
same task cannot both win; the loser simply sees no row updated.
"""
