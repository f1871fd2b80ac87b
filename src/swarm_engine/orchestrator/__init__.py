"""Swarm task orchestration: scheduling, sandbox pooling, execution and retries.

Why not Celery / Prefect / Temporal?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The hard part here is not queuing. It is the coupling between three pieces
of durable state that a generic broker does not model: the swarm-scoped
dependency graph, the capacity-bounded pool of provider sandboxes that are
reused between tasks of the same swarm, and the task status field that
guards dispatch. All three live in one SQLite file and every transition is a
conditional ``UPDATE ... WHERE status = ...``, which is what keeps a task
from being dispatched twice or a sandbox from being double-assigned.

One trigger loop per process polls the store, picks the next runnable task
per active swarm, acquires a sandbox and hands the task to a worker thread.
Workers report back through the store and a completion queue.
"""
