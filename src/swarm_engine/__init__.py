"""Task orchestration engine for sandboxed swarm task execution.

Tasks grouped into swarms are dispatched in dependency and priority order
onto a capacity-bounded pool of provider sandboxes.  A single polling loop
(the trigger engine) selects runnable work, reserves sandbox capacity and
hands each task to an executor thread; outcomes are written back through the
SQLite store, whose conditional status updates are the only synchronization
point between the loop, executors and manual operator actions.
"""

__version__ = "0.1.0"
