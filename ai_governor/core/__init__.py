"""
Core modules for AI request governance.

This package contains pricing, routing, caching, the cost ledger, quotas,
budget monitoring and the request execution state machine.
"""
