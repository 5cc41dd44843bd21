"""Run coordination for file-addressed agent work.

Why not Celery / Dramatiq / Arq?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The hard part is not queuing. It is keeping one owner per card while several
flows (research, plan, implement, review) compete for a small number of local
CLI agent slots, and writing the outcome back into a markdown file a human may
be editing at the same time. Responsibilities no generic queue covers:

- Per-resource exclusion that survives a crash (SQLite lock table).
- Grouping locks so non-parallelizable cards of one phase run one at a time.
- Launch retries with backoff while the resource stays owned.
- Owned-field reconciliation of card frontmatter, checklist and history.

A broker would add an operational dependency to a single-machine tool and
still need all of the above inside the worker.
"""
