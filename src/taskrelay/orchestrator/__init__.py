"""Multi-worker task orchestration coordinated through the filesystem.

Why not a broker or a database?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Workers are independent processes on one machine that drive CLI coding
agents through long, multi-phase runs. What they need from coordination is
small and specific:

- Exclusive claims that survive the claimant dying: a lease file created
  with an atomic link, valid for a fixed time, reclaimed by whoever next
  finds it stale.
- Task state that a human can read and edit: one markdown file per task,
  moved between bucket directories by atomic rename.
- Crash resume: a per-worker session checkpoint naming the task and the
  phase to continue from, honoured only while the worker still owns the
  task's lease.

All three are a handful of ``os.link`` / ``os.replace`` calls. A broker
(Redis, RabbitMQ) or a shared database would add an operational dependency
and still leave the phase state machine, the quality gate and the model
fallback policy to custom worker code.
"""
