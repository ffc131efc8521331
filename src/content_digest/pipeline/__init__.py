"""Asynchronous job pipeline: queue, workers, provider orchestration and progress fan-out.

The queue is a SQLite table rather than an external broker. Workers claim
envelopes with a lease (visibility timeout); an expired lease makes the
envelope visible again, which gives at-least-once delivery without Redis.
Idempotency is keyed on the job id and the worker consults persisted job
and prompt-task state before redoing any work, so a redelivered envelope
resumes the job instead of duplicating it.
"""
