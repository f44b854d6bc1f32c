"""Delve Research — the user-facing research workflow.

Architecture:
    ResearchStateMachine — legal stages of a run and the events between them
    SessionStore         — persisted snapshot of the one active session
    VisibilityMonitor    — advisory foreground/background tracking
    ResearchWorkflow     — drives the machine, calls the orchestrator,
                           mirrors progress into the store
"""
