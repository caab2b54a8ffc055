"""
                        Services Module

Contains the backend-facing services the views are built on.
The backend has an in-memory (development) and a SQL + Redis (production)
implementation, selected by ENV_MODE.

Services:
    - backend: Backend clients and the change feed
    - notifier: Transient user-facing notices
    - invoices: Invoice derivation and contact edits
"""

from ordersync.services.notifier import Notice, Notifier

__all__ = ["Notice", "Notifier"]
