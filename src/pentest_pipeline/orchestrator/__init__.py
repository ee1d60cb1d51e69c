"""Orchestration core for long-running CLI security agents.

Why git for checkpoints?
~~~~~~~~~~~~~~~~~~~~~~~~
Agents write arbitrary files into the workspace (deliverables, scratch
scripts, downloaded schemas). A failed attempt has to leave no trace, and a
later phase has to be able to rewind to an earlier agent's accepted output.
A commit per attempt gives both with one external dependency that every
target workspace already has:

- ``reset --hard`` + ``clean -fd`` restores the exact pre-attempt tree.
- Success commits double as rollback targets for ``rollback-to``.
- ``git log`` is a readable history of what each agent changed.

Session progress lives in SQLite next to the audit logs; the two are
reconciled by agent name and attempt number, never by timestamps.
"""
