"""
P2P Kernel - procure-to-pay requisition core

Shared foundation for the requisition lifecycle:
- Race-safe, year-scoped sequence allocation
- Hash-chained audit trail
- Typed, categorized exceptions
- Structured JSON logging
- Injectable clock for deterministic timestamps
"""

__version__ = "0.1.0"
