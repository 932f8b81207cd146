"""Run orchestration for dependent agent tasks.

A run is a goal plus a list of tasks. Tasks carry optional dependencies (given
explicitly or inferred from their text); the orchestrator lays them out into
layers, runs each layer concurrently on fresh workers and records the outcome
of every task. The run can be checkpointed to a slot and resumed later; only
tasks that are still pending are executed again.

The worker backend, the planner and the checkpoint slot are narrow protocols so
the core can be driven by an agent CLI, an in-process fake, or anything else
that can run one instruction to completion.
"""
