"""Job dispatch and external-agent orchestration.

Why two pollers and a file mailbox?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The queue consumer (``worker``) owns the job queue: it claims rows, hands
them to the Agent Executor and watches for a terminal status. The relay
(``agent-manager``) owns the gateway credentials and the webhook call. The
two processes share nothing but the SQLite store and a single-slot JSON
mailbox, so either can be restarted on its own.

The mailbox holds one request. A worker serializes its own handoffs, but a
second worker process writing before the relay reads replaces the first
request; the first waiter sees another job in the slot and fails its job as
overwritten. The relay forwards only jobs already claimed (``processing``),
so a stale request never moves a row out of the queue.
``EXPORT_DISPATCH_HANDOFF_MODE=direct`` bypasses the mailbox and lets the
worker call the gateway itself.
"""
