"""
PHIGuard -- PHI Access Control, Masking & Audit Engine
======================================================

A Python library for the policy and bookkeeping layer that sits between an
authenticated caller (user id + role) and anything that renders or exports
Protected Health Information.  Provides a static role-to-category
permission matrix, role-aware PHI masking, an append-only, hash-chained
audit ledger with compliance reporting, and time-bounded sessions with
renewal warnings.

Authentication, persistence and transport are supplied by the host
application through the interfaces in ``phiguard.environment``.
"""

__version__ = "0.1.0"
