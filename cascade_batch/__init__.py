"""
cascade_batch -- orchestration of the cost cascade.

Runs cascade stages off the event ledger: a registry maps each ledger
event type to the stage that consumes it, the dispatcher runs every
pending event in its own SAVEPOINT, and the orchestrator wires services,
trigger entry points and the polling loop.

Architecture:
    Top-level package. Nothing in cascade_kernel, cascade_engines or
    cascade_services imports from cascade_batch.
"""
