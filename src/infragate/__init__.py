"""Gated infrastructure deployment pipeline.

This package drives a change to a declarative infrastructure definition
through validation, linting, security scanning and change preview before
permitting an apply against shared infrastructure state:
- Lease-based lock manager with fencing tokens
- Content-addressed artifact hand-off between stages
- Policy gate evaluation over heterogeneous scanner output
- Bounded-time stage execution through pluggable tool adapters
- Human approval suspension point
- Pipeline engine state machine with retry and crash reconciliation
"""

__version__ = "0.1.0"
