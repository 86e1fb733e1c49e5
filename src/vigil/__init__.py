"""vigil - supervised execution of long-running tasks.

Manifesto:
    A job that runs for a day will fail somewhere in the middle. vigil
    keeps the failure small: every completed step is checkpointed, transient
    errors are retried with backoff, anything else pauses the task loudly,
    and an operator restores from a verified checkpoint instead of starting
    over.

Architecture::

    vigil.state          durable store (status, logs, alerts, heartbeat)
    vigil.checkpoint     integrity-checked recovery points
    vigil.execution      steps, timeouts, retry engine
    vigil.health         monitor, thresholds, reports
    vigil.recovery       operator recovery operations
    vigil.orchestration  plan loading and the supervised loop
    vigil.ops / cli      operation functions and the ``vigil`` command

Tags:
    vigil, orchestration, checkpoint, retry, recovery
"""

__version__ = "0.1.0"
