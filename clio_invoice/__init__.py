"""
Clio invoice-approval sync service.

The package keeps a local copy of Clio bills awaiting approval (with their
matters, clients and line items) and pushes approval decisions back to Clio.
``clio_client`` talks to the Clio REST API, ``sync`` reconciles remote
records into the local database and ``polling`` re-runs the reconciliation
on a timer.
"""

__all__ = ["api", "cli", "clio_client", "constants", "models", "polling", "settings", "sync", "utils"]
