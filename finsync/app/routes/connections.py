"""
Connection Routes

User-facing endpoints for:
- Storing and testing Pluggy credentials
- Connect tokens for the Pluggy Connect widget
- Linking, listing and removing connections
- Manual sync of one or all connections
"""

from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

from finsync.database import get_db
from finsync.app import models, schemas
from finsync.app.auth import get_current_active_user
from finsync.app.open_finance.credentials import CredentialStore
from finsync.app.open_finance.exceptions import (
    AuthenticationError, CredentialsNotConfiguredError, InvalidCredentialsError, ProviderError
)
from finsync.app.open_finance.providers.payloads import ConnectTokenOptions, ProviderCredentials
from finsync.app.open_finance.service import ProviderFactory, SyncService, get_provider_factory

router = APIRouter(prefix="/connections", tags=["connections"])


def _provider_failure(e: ProviderError) -> HTTPException:
    if isinstance(e, AuthenticationError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Provider authentication failed: {e}"
        )
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail=f"Provider request failed: {e}"
    )


def _get_connection(db: Session, user: models.User, connection_id: int) -> models.Connection:
    connection = db.query(models.Connection).filter(
        models.Connection.id == connection_id,
        models.Connection.user_id == user.id
    ).first()
    if not connection:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Connection not found"
        )
    return connection


@router.get("/", response_model=List[schemas.Connection])
def list_connections(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    return CredentialStore(db).list_connections(current_user.id)


@router.post("/", response_model=schemas.ConnectionCreated, status_code=status.HTTP_201_CREATED)
async def add_connection(
    payload: schemas.ConnectionCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user),
    provider_factory: ProviderFactory = Depends(get_provider_factory)
):
    """
    Link an item reported by the Pluggy Connect widget and run its first sync.

    Example:
        POST /connections
        {"item_id": "c0e5c0b4-..."}
    """
    service = SyncService(db, provider_factory)
    try:
        connection, result = await service.add_connection(current_user.id, payload.item_id)
    except CredentialsNotConfiguredError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ProviderError as e:
        raise _provider_failure(e)

    return schemas.ConnectionCreated(
        connection=schemas.Connection.model_validate(connection),
        sync=schemas.SyncResponse(success=result.success, **result.to_dict())
    )


@router.delete("/{connection_id}")
def remove_connection(
    connection_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    if not SyncService(db).remove_connection(current_user.id, connection_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Connection not found"
        )
    return {"message": "Connection removed successfully"}


@router.post("/sync", response_model=schemas.UserSyncResponse)
async def sync_all_connections(
    sync_params: Optional[schemas.SyncParams] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user),
    provider_factory: ProviderFactory = Depends(get_provider_factory)
):
    """
    Sync every connection of the current user.

    Users without provider credentials get a successful empty result.
    """
    service = SyncService(db, provider_factory)
    result = await service.sync_user(
        current_user.id,
        from_date=sync_params.from_date if sync_params else None,
        to_date=sync_params.to_date if sync_params else None,
        sync_type=models.SyncType.MANUAL
    )
    return schemas.UserSyncResponse(**result)


@router.post("/{connection_id}/sync", response_model=schemas.SyncResponse)
async def sync_connection(
    connection_id: int,
    sync_params: Optional[schemas.SyncParams] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user),
    provider_factory: ProviderFactory = Depends(get_provider_factory)
):
    connection = _get_connection(db, current_user, connection_id)

    service = SyncService(db, provider_factory)
    try:
        provider = service.get_provider(current_user.id)
    except InvalidCredentialsError as e:
        raise _provider_failure(e)
    if provider is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Provider credentials not configured"
        )

    try:
        result = await service.sync_connection(
            connection,
            provider,
            from_date=sync_params.from_date if sync_params else None,
            to_date=sync_params.to_date if sync_params else None,
            sync_type=models.SyncType.MANUAL
        )
    except AuthenticationError as e:
        raise _provider_failure(e)
    finally:
        await provider.aclose()

    message = None
    if result.errors:
        message = f"{len(result.errors)} errors occurred"

    return schemas.SyncResponse(success=result.success, message=message, **result.to_dict())


@router.post("/connect-token", response_model=schemas.ConnectTokenResponse)
async def create_connect_token(
    request: Optional[schemas.ConnectTokenRequest] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user),
    provider_factory: ProviderFactory = Depends(get_provider_factory)
):
    try:
        options = ConnectTokenOptions(
            client_user_id=str(current_user.id),
            **(request.model_dump(exclude_none=True) if request else {})
        )
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=", ".join(err["msg"] for err in e.errors())
        )

    service = SyncService(db, provider_factory)
    try:
        token = await service.create_connect_token(current_user.id, options)
    except CredentialsNotConfiguredError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ProviderError as e:
        raise _provider_failure(e)

    return schemas.ConnectTokenResponse(connect_token=token)


@router.put("/credentials")
def update_credentials(
    credentials: schemas.ProviderCredentialsUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    try:
        ProviderCredentials(client_id=credentials.client_id, client_secret=credentials.client_secret)
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=", ".join(err["msg"] for err in e.errors())
        )

    CredentialStore(db).save_credentials(current_user.id, credentials.client_id, credentials.client_secret)
    return {"message": "Credentials saved successfully"}


@router.post("/credentials/test", response_model=schemas.CredentialsTestResult)
async def test_credentials(
    credentials: schemas.ProviderCredentialsUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user),
    provider_factory: ProviderFactory = Depends(get_provider_factory)
):
    service = SyncService(db, provider_factory)
    return await service.verify_credentials(credentials.client_id, credentials.client_secret)
