from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import date, datetime

from .models import ConnectionStatus


# Connections
class ConnectionCreate(BaseModel):
    item_id: str = Field(min_length=1)


class Connection(BaseModel):
    id: int
    item_id: str
    institution_name: Optional[str] = None
    status: ConnectionStatus
    status_detail: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SyncParams(BaseModel):
    from_date: Optional[date] = None
    to_date: Optional[date] = None


class SyncResponse(BaseModel):
    success: bool
    created: int = 0
    updated: int = 0
    skipped: int = 0
    permission_denied: int = 0
    errors: List[str] = []
    message: Optional[str] = None


class UserSyncResponse(SyncResponse):
    connections: int = 0


class ConnectionCreated(BaseModel):
    connection: Connection
    sync: SyncResponse


# Connect tokens
class ConnectTokenRequest(BaseModel):
    webhook_url: Optional[str] = None
    oauth_redirect_url: Optional[str] = None
    avoid_duplicates: Optional[bool] = None
    item_id: Optional[str] = None  # Update mode for an existing item


class ConnectTokenResponse(BaseModel):
    connect_token: str


# Provider credentials
class ProviderCredentialsUpdate(BaseModel):
    client_id: str
    client_secret: str


class CredentialsTestResult(BaseModel):
    valid: bool
    message: str
    status: Optional[str] = None
    latency_ms: Optional[int] = None
    auth_status: Optional[str] = None


# Webhooks
class WebhookResponse(BaseModel):
    success: bool
    processed: bool
    message: str
    error: Optional[str] = None
