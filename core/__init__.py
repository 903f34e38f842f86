"""
Core module for tapfarm.

This package contains the scheduling engine (cooldown registry, resource
limiter, work queue, dispatcher, scheduler) plus configuration, logging and
status reporting.

Submodules:
    config: Application settings (``FarmSettings``) via Pydantic; key / context loaders.
    models: ``QueueItem``, ``Slot``, ``Outcome`` and per-key bookkeeping.
    cooldown: ``CooldownRegistry`` - monotonic per-key eligibility times.
    limiter: ``ResourceLimiter`` - global cap on concurrent executions.
    work_queue: ``WorkQueue`` - delay heap + ready FIFO with single-flight per key.
    dispatcher: ``Dispatcher`` - the per-key state machine and dispatch loop.
    scheduler: ``FarmScheduler`` - stagger seeding, lifecycle, persistence.
    monitoring: Status snapshots and log / Rich sinks.
    health_endpoint: Lightweight HTTP server exposing ``/health`` and ``/metrics``.
    logging_setup: Compressed rotating file + safe console logging.
    utils: Key redaction and corruption-safe JSON read/write helpers.
"""
