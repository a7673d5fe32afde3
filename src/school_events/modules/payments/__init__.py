"""
Payments Module

Payment Orchestrator: opens payments for registrations, confirms them with
the payment provider (client confirmation or webhook), refunds them on
admin request and reminds guardians about overdue payments.
"""

from .jobs import register_payment_jobs
from .router import router

__all__ = ["router", "register_payment_jobs"]
