"""Durable issue delivery: the enqueuer and the polling worker.

The ``issue_delivery_queue`` table is the queue.  A row means "this issue
still has to reach this address"; workers lock rows with ``SKIP LOCKED``
and delete them once the send is settled.
"""
