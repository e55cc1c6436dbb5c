"""Tenant identity shared by the cache, invalidator, hub and storage layers."""

from __future__ import annotations

from typing import NewType

TenantId = NewType("TenantId", str)


def tenant_id(value: object) -> TenantId:
    """Coerce ``value`` into a :data:`TenantId`, rejecting empty values."""

    text = str(value or "").strip()
    if not text:
        raise ValueError("tenant id must be a non-empty string")
    return TenantId(text)


__all__ = ["TenantId", "tenant_id"]
