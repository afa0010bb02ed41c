"""
Sync subsystem.

Components:
- schema.py: table descriptions + boundary translation (camelCase <-> snake_case)
- models.py: typed views of records (Project, Task, Label, Subtask, Comment)
- change_queue.py: durable, coalescing queue of unsynced local mutations
- mutations.py: optimistic local writes + applying one change to the remote
- orchestrator.py: push/pull cycles, conflict policy, retry/backoff, status
- connectivity.py: reachability monitor with offline->online edge events
"""
