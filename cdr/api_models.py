from __future__ import annotations

from pydantic import BaseModel, Field


class ReconcileRequest(BaseModel):
    identities: list[str] | None = Field(
        None, description="Resource identities (Kind/namespace/name); all monitored units when omitted"
    )
    dry_run: bool = Field(False, description="Run a read-only pass now and return its report")


class ScopeRequest(BaseModel):
    slug: str = Field(..., min_length=1, max_length=63)
    upstream: str | None = Field(None, description="Upstream scope id or slug")
    clone: bool = Field(False, description="Copy every upstream unit into the new scope")


class ManifestRequest(BaseModel):
    scope: str
    manifests: str = Field(..., description="Multi-document YAML")
    labels: dict[str, str] = Field(default_factory=dict)
