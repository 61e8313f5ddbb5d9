"""Execution of flows against an external sync engine.

Modules
-------
unit            ExecutionUnit and build_unit (operation -> one-edge work descriptor)
engine          SyncEngine protocol, status/log value types, event names
log_buffer      SequencedLogBuffer (engine-side, sequence-numbered ring buffer)
memory_engine   InMemorySyncEngine (scripted engine for tests/development)
completion      CompletionTracker (event + poll race, exactly-once resolution)
log_pipeline    LogDeliveryPipeline (dedup, ordering, gap recovery, bounded buffers)
orchestrator    FlowOrchestrator (sequential per-flow execution, stop, cleanup)

Submodules are imported directly; ``orchestrator`` depends on
:mod:`flowsync.flows.store`, which itself depends on this package.
"""
