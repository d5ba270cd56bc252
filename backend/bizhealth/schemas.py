"""Pydantic schemas for request/response payloads."""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .models import ConnectionStatusEnum, SyncStatusEnum


SyncOutcome = Literal["success", "failed", "skipped", "queued"]


class SyncResult(BaseModel):
    """Outcome of one sync attempt for one connection."""

    connection_id: str = Field(description="Connection that was synced")
    user_id: Optional[str] = Field(None, description="Owner of the connection")
    provider: Optional[str] = Field(None, description="Provider id, e.g. shopify")
    status: SyncOutcome = Field(
        description="success, failed, skipped (another sync holds the lock) or queued (handed to the worker)"
    )
    stage: Optional[str] = Field(None, description="Last pipeline stage reached")
    metrics_updated: Dict[str, bool] = Field(default_factory=dict, description="Profile fields written by this sync")
    pillar_impact: Dict[str, int] = Field(default_factory=dict, description="Pillar -> score from the provider mapping")
    changes: List[str] = Field(default_factory=list, description="Human readable change lines")
    score: Optional[int] = Field(None, description="Overall score after this sync")
    previous_score: Optional[int] = Field(None, description="Overall score before this sync")
    change_reason: Optional[str] = Field(None, description="One-line explanation of the biggest pillar move")
    error: Optional[str] = None
    duration_ms: int = 0

    model_config = {
        "json_schema_extra": {
            "example": {
                "connection_id": "3f1c2f9e-4a44-4c4e-9d0b-6f3a1c0b7e21",
                "user_id": "user_123",
                "provider": "shopify",
                "status": "success",
                "stage": "success",
                "metrics_updated": {"revenue_monthly": True},
                "pillar_impact": {"revenue": 75},
                "changes": ["Revenue updated to ~$21,400/mo from Shopify orders"],
                "score": 64,
                "previous_score": 58,
                "change_reason": "Revenue improved - Revenue updated to ~$21,400/mo from Shopify orders",
                "error": None,
                "duration_ms": 1840,
            }
        }
    }


class FleetSyncResult(BaseModel):
    """Aggregate of a scheduled sync across every eligible connection."""

    total_integrations: int = Field(description="Connections considered")
    synced: int = Field(description="Connections that synced successfully")
    failed: int = Field(description="Connections whose sync failed")
    skipped: int = Field(0, description="Connections already being synced elsewhere")
    results: List[SyncResult] = Field(default_factory=list)


class ProviderCatalogEntry(BaseModel):
    """Provider as listed in the integrations catalog."""

    id: str
    name: str
    description: str = ""
    category: str = ""
    pillars_affected: List[str] = Field(default_factory=list)
    required_scopes: List[str] = Field(default_factory=list)
    available: bool = True


class ConnectionOut(BaseModel):
    """Public representation of a connection. Tokens are never exposed."""

    id: str = Field(description="Unique connection identifier")
    provider: str = Field(description="Provider id")
    status: ConnectionStatusEnum = Field(description="Connection status")
    external_account_id: Optional[str] = Field(None, description="Shop domain, Stripe account, realm id or GA4 property")
    scopes: str = ""
    extra: Dict[str, Any] = Field(default_factory=dict, description="Provider metadata, e.g. discovered GA4 properties")
    last_sync_at: Optional[datetime] = None
    last_sync_status: Optional[SyncStatusEnum] = None
    last_sync_error: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class ConnectionListResponse(BaseModel):
    """List of the caller's connections."""

    connections: List[ConnectionOut] = Field(description="List of connections")
    total: int = Field(description="Total number of connections")


class AccountSelection(BaseModel):
    """Request body for choosing the external account after connecting."""

    external_account_id: str = Field(description="Account to read from, e.g. a GA4 property id", min_length=1)
    account_name: Optional[str] = Field(None, description="Display name of the chosen account")


class ScoreSnapshotOut(BaseModel):
    """One recorded score computation."""

    id: int
    user_id: str
    created_at: datetime
    score: int
    revenue_score: int
    profitability_score: int
    retention_score: int
    acquisition_score: int
    operations_score: int
    primary_risk: Optional[str] = None
    fastest_lever: Optional[str] = None
    recommended_next_steps: List[Any] = Field(default_factory=list)
    missing_data: List[str] = Field(default_factory=list)
    change_reason: Optional[str] = None
    source: Optional[str] = None

    model_config = {"from_attributes": True}


class HealthResponse(BaseModel):
    status: str = "ok"
