"""Follow-up queue engines.

This package provides the queue side of triage:
- SLA tracker for deadlines and ON_TIME/AT_RISK/OVERDUE status
- Snooze engine for wake times inside working hours
- Follow-up queue state machine with optimistic versioning
- Notification sink protocol with a logging default
- Triage runner that feeds classified mail into the queue

Import from the submodules directly (``followup.engine.queue`` etc.); the
database store depends on ``followup.engine.models``, so this package
initializer stays free of imports.
"""
