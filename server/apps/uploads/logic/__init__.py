"""Business logic layer for uploads app.

This package contains the deferred file operation engine:
- Operation queue with change notifications
- Upload manager running batches on document save
- Reconciliation of batch results with saved form data

Network and image concerns live in ``infrastructure``; nothing here
talks to storage directly.
"""
