"""Resolved caller identity shared by the API layer and the services."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Identity:
    """Who is acting, for which tenant."""

    tenant_id: str
    actor_id: str
    actor_role: str
    actor_email: str | None = None
    source: str = "headers"
