"""Workflow core: stage machine, engine, recovery and operator controls.

Key Components:
    - machine.StageMachine: Legal stage order and transition queries
    - workflow.WorkflowEngine: The only writer of an issue's stage
    - recovery.RecoveryManager: Retry, backoff and error-ledger bookkeeping
    - approvals.ApprovalFlow: Reviewer approvals that advance issues
    - operator.OperatorControls: Cancel, reset and retry escape hatches
    - stages.StageDispatcher: Stage to handler dispatch

Example:
    >>> from magazine_pipeline.engine.machine import StageMachine
    >>> from magazine_pipeline.engine.workflow import WorkflowEngine
    >>> engine = WorkflowEngine(store, StageMachine(), notifier)
"""
