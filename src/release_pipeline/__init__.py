"""Release pipeline orchestration for gated, progressive deployments.

This package takes a built artifact through its promotion path:
- Security and quality gates evaluated from scanner findings
- Time-bounded human approvals per environment
- Canary traffic shifting with health observation between steps
- Automatic rollback to the last-known-good artifact on regression
- Poll-driven reconciliation with PostgreSQL persistence
"""

__version__ = "1.0.0"
