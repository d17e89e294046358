"""Job orchestrator for the scenic-area data acquisition pipeline.

Why not Celery / Dramatiq / Arq?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Jobs here are thin wrappers around data-collection scripts that write their
results into an on-disk asset tree (``assets/<region>/<city>/data``).  What
the orchestrator adds on top of "run a command" is:

- A persisted task record with progress and an append-only log that the
  admin dashboard streams live.
- Output-artifact verification: a script that exits 0 but did not write its
  file is still a failure.
- Dependency chaining: organising a region fans out into staggered per-city
  spot searches, and each search is followed by a summary job.

All of this runs on one machine against one SQLite file, so a single asyncio
loop with a concurrency ceiling is the right size.  A broker would add an
operational dependency without removing any of the logic above.
"""
