"""
P2P Modules.

Thin orchestration layers over the P2P kernel and engines.
Each module contains:
- Domain models (the nouns)
- Workflows (state machines)
- Configuration schemas (settings)
- ORM persistence and read selectors
- Services (the lifecycle operations)

Modules:
- Requisition: creation, submission, conditional multi-level approval,
  rejection, cancellation, duplicate and budget checks, queries
"""
