"""
Billing Kernel

Shared infrastructure for the lease billing engine:
- Database base classes and engine/session management
- Typed exception hierarchy with machine-readable codes
- Structured JSON logging with request-scoped context
- Injectable clock
- Locked-counter sequence allocation
"""

__version__ = "0.1.0"
