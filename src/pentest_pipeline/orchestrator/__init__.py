"""Checkpointed execution of assessment units against a shared git workspace.

Each unit runs against a single working tree that its siblings share. The
hard part is keeping that tree, the session record and the audit trail
consistent when units fail, retry or run in parallel:

- Every attempt is bracketed by a checkpoint commit and either a success
  commit or a hard reset, with deliverables preserved across resets.
- Mutating git commands are serialized process-wide and retried on
  lock-file contention.
- The session record and the audit metrics document are updated through
  keyed mutexes, a cross-process lock file and atomic renames.
- Agent output is parsed by a tolerant JSON pipeline before schema checks,
  because model-written JSON is routinely almost-valid.
"""
