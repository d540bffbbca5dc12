"""Shared building blocks for the validator registry services.

Exposes the exception taxonomy, key handling and signature helpers, logging
setup, HTTP fetch helpers and the async persistence layer used by
``manifest_svc``.
"""

from __future__ import annotations

__version__ = "1.0.0"
