"""
Workflow Kernel - approval workflow execution core.

An append-only approval engine with:
- Typed document references (the engine never owns the document)
- Row-locked vote counting
- Immutable action ledger
- Deterministic, injectable time
"""

__version__ = "0.1.0"
