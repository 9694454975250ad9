"""Reconciliation controller that binds volume snapshots to snapshot contents and manages their finalizers, with an in-memory cluster to run against."""

__version__ = "0.1.0"