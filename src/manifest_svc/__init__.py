"""
Validator Manifest Service

Tracks the identity and trust state of ledger validators:
- Manifest decoding and self-signature verification
- Domain ownership verification against published trust files
- Trusted-list ingestion and per-list membership tracking
- Revocation, propagation and lifecycle passes over the store
"""

from __future__ import annotations

__version__ = "1.0.0"
__author__ = "Validator Registry Team"
