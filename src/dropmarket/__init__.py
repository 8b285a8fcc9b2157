"""
Dropmarket engine.

Recurring installment ("drop") payments for marketplace orders:
- Drop schedule generation
- Guarded subscription state machine
- Drop execution against the spendable balance
- Daily sweep, payment retries and reminders (Celery)
- Conflict detection and resolution
"""

__version__ = "1.0.0"
