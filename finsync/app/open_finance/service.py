"""
Open Finance Sync Service

Orchestrates pull syncs on top of the gateway and entity syncers:
- Provider construction from the user's stored credentials
- Per-connection sync (accounts, transactions, bills, investments, loans)
- Sync logging and connection status bookkeeping
- Connection linking/removal and connect tokens for the linking widget
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from finsync.config import Settings, get_settings
from finsync.app.models import (
    Account, Connection, SyncLog, SyncStatus, SyncType
)
from .credentials import CredentialStore, StoredCredentials
from .exceptions import (
    AuthenticationError, ConnectionSyncError, CredentialsNotConfiguredError,
    InvalidCredentialsError, ProviderError
)
from .mappers import map_connection_status
from .providers.base import BaseAggregationProvider
from .providers.payloads import ConnectTokenOptions
from .syncers import (
    AccountSyncer, BillSyncer, InvestmentSyncer, LoanSyncer, SyncResult, TransactionSyncer
)

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[StoredCredentials], BaseAggregationProvider]

_connection_locks: Dict[Tuple[int, str], asyncio.Lock] = {}
_lock_users: Dict[Tuple[int, str], int] = {}


def default_provider_factory(credentials: StoredCredentials) -> BaseAggregationProvider:
    from .providers.pluggy import PluggyProvider

    return PluggyProvider(credentials.client_id, credentials.client_secret)


def get_provider_factory() -> ProviderFactory:
    """FastAPI dependency yielding the provider factory (overridable)."""
    return default_provider_factory


@asynccontextmanager
async def connection_lock(user_id: int, item_id: str) -> AsyncIterator[None]:
    """
    Serialize every sync of one (user, item) within this process.

    The lock entry is dropped once no task holds or waits for it.
    """
    key = (user_id, item_id)
    lock = _connection_locks.get(key)
    if lock is None:
        lock = _connection_locks[key] = asyncio.Lock()
    _lock_users[key] = _lock_users.get(key, 0) + 1
    try:
        async with lock:
            yield
    finally:
        _lock_users[key] -= 1
        if not _lock_users[key]:
            del _lock_users[key]
            del _connection_locks[key]


def _sync_status(result: SyncResult) -> SyncStatus:
    if not result.errors:
        return SyncStatus.SUCCESS
    if result.created or result.updated:
        return SyncStatus.PARTIAL
    return SyncStatus.FAILED


class SyncService:
    """
    Pull-sync orchestration for one database session.

    Providers are built per user through ``provider_factory`` so token caches
    never cross users.
    """

    def __init__(
        self,
        db: Session,
        provider_factory: Optional[ProviderFactory] = None,
        settings: Optional[Settings] = None
    ):
        self.db = db
        self.credentials = CredentialStore(db)
        self.provider_factory = provider_factory or default_provider_factory
        self.settings = settings or get_settings()

    def get_provider(self, user_id: int) -> Optional[BaseAggregationProvider]:
        """
        Build a provider for the user, or None when credentials are not configured.

        Raises:
            InvalidCredentialsError: Stored credentials are malformed or cannot be decrypted
        """
        stored = self.credentials.get_credentials(user_id)
        if stored is None:
            return None
        return self.provider_factory(stored)

    def _require_provider(self, user_id: int) -> BaseAggregationProvider:
        provider = self.get_provider(user_id)
        if provider is None:
            raise CredentialsNotConfiguredError(user_id)
        return provider

    async def sync_item(
        self,
        provider: BaseAggregationProvider,
        user_id: int,
        item_id: str,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None
    ) -> SyncResult:
        """
        Run every entity syncer over one item.

        Accounts are listed once and shared by the syncers. Accounts are synced
        first so transactions, bills and holdings can link to them.
        """
        to_date = to_date or date.today()
        from_date = from_date or to_date - timedelta(days=self.settings.initial_sync_days)
        bills_from = min(from_date, to_date - timedelta(days=self.settings.bills_window_days))

        accounts = await provider.list_accounts(item_id)

        result = SyncResult()
        result.merge(await AccountSyncer(self.db, provider, user_id).sync(item_id, accounts))
        result.merge(await TransactionSyncer(self.db, provider, user_id).sync(item_id, from_date, to_date, accounts))
        result.merge(await BillSyncer(self.db, provider, user_id).sync(item_id, bills_from, to_date, accounts))
        result.merge(await InvestmentSyncer(self.db, provider, user_id).sync(item_id, accounts))
        result.merge(await LoanSyncer(self.db, provider, user_id).sync(item_id, accounts))
        return result

    async def sync_connection(
        self,
        connection: Connection,
        provider: BaseAggregationProvider,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        sync_type: SyncType = SyncType.MANUAL
    ) -> SyncResult:
        """
        Sync one connection and record a SyncLog for it.

        Provider failures other than authentication end up in the result's
        errors. Authentication failures are logged on the SyncLog and re-raised.

        Args:
            connection: Connection to sync
            provider: Provider built for the connection's owner
            from_date: Start of the transaction window (default: initial_sync_days ago)
            to_date: End of the window (default: today)
            sync_type: MANUAL, WEBHOOK or SCHEDULED

        Returns:
            SyncResult for the connection
        """
        async with connection_lock(connection.user_id, connection.item_id):
            sync_log = SyncLog(
                connection_id=connection.id,
                sync_type=sync_type,
                sync_status=SyncStatus.FAILED,
                started_at=datetime.utcnow()
            )
            self.db.add(sync_log)
            self.db.commit()

            result = SyncResult()
            try:
                item = await provider.get_item(connection.item_id)
                connection.status = map_connection_status(item.status)
                if item.connector:
                    connection.institution_name = item.connector.name
                self.db.commit()

                result = await self.sync_item(
                    provider, connection.user_id, connection.item_id, from_date, to_date
                )
            except AuthenticationError as e:
                self.db.rollback()
                sync_log.error_message = str(e)
                sync_log.completed_at = datetime.utcnow()
                self.db.commit()
                raise
            except ProviderError as e:
                self.db.rollback()
                logger.error(f"Sync of connection {connection.item_id} failed: {e}")
                result.errors.append(str(e))

            connection.last_sync_at = datetime.utcnow()
            sync_log.sync_status = _sync_status(result)
            sync_log.created_count = result.created
            sync_log.updated_count = result.updated
            sync_log.skipped_count = result.skipped
            sync_log.permission_denied_count = result.permission_denied
            sync_log.error_message = "\n".join(result.errors) or None
            sync_log.completed_at = datetime.utcnow()
            self.db.commit()

        logger.info(
            f"Synced connection {connection.item_id}: {result.created} created, {result.updated} updated, "
            f"{result.permission_denied} permission denied, {len(result.errors)} errors"
        )
        return result

    async def sync_user(
        self,
        user_id: int,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        sync_type: SyncType = SyncType.MANUAL
    ) -> Dict[str, Any]:
        """
        Sync every connection of a user, one at a time.

        A user without credentials is a successful no-op. A failing connection
        is reported and the next one is still synced; an authentication failure
        stops the whole run.

        Returns:
            {
                'success': bool,
                'connections': int,
                'created': int,
                'updated': int,
                'skipped': int,
                'permission_denied': int,
                'errors': List[str],
                'message': str
            }
        """
        summary: Dict[str, Any] = {
            "success": True,
            "connections": 0,
            "created": 0,
            "updated": 0,
            "skipped": 0,
            "permission_denied": 0,
            "errors": [],
            "message": "",
        }

        try:
            provider = self.get_provider(user_id)
        except InvalidCredentialsError as e:
            summary.update(success=False, message=str(e), errors=[str(e)])
            return summary

        if provider is None:
            summary["message"] = "Provider credentials not configured; nothing to sync"
            return summary

        connections = self.credentials.list_connections(user_id)
        try:
            for connection in connections:
                result = await self.sync_connection(connection, provider, from_date, to_date, sync_type)
                summary["connections"] += 1
                summary["created"] += result.created
                summary["updated"] += result.updated
                summary["skipped"] += result.skipped
                summary["permission_denied"] += result.permission_denied
                if result.errors:
                    summary["errors"].append(str(ConnectionSyncError(connection.item_id, result.errors)))
        except AuthenticationError as e:
            logger.error(f"Aborting sync for user {user_id}: {e}")
            summary["success"] = False
            summary["errors"].append(str(e))
            summary["message"] = "Authentication with the provider failed"
            return summary
        finally:
            await provider.aclose()

        summary["success"] = not summary["errors"]
        summary["message"] = (
            f"Synced {summary['connections']} connections"
            if summary["success"]
            else f"{len(summary['errors'])} connections reported errors"
        )
        return summary

    async def create_connect_token(self, user_id: int, options: Optional[ConnectTokenOptions] = None) -> str:
        """
        Connect token for the client-side linking widget.

        Raises:
            CredentialsNotConfiguredError: No stored credentials
            AuthenticationError: Provider rejected the credentials
        """
        options = options or ConnectTokenOptions()
        if not options.client_user_id:
            options.client_user_id = str(user_id)

        provider = self._require_provider(user_id)
        try:
            return await provider.create_connect_token(options)
        finally:
            await provider.aclose()

    async def add_connection(self, user_id: int, item_id: str) -> Tuple[Connection, SyncResult]:
        """
        Link a provider item to the user and run its initial sync.

        Called once the linking widget reports a new item id. Linking the same
        item again refreshes its status and syncs it.
        """
        provider = self._require_provider(user_id)
        try:
            item = await provider.get_item(item_id)

            connection = self.credentials.get_connection(user_id, item_id)
            if connection is None:
                connection = Connection(user_id=user_id, item_id=item_id)
                self.db.add(connection)
            connection.institution_name = item.connector.name if item.connector else connection.institution_name
            connection.status = map_connection_status(item.status)
            self.db.commit()
            self.db.refresh(connection)
            logger.info(f"Linked item {item_id} for user {user_id}")

            result = await self.sync_connection(connection, provider, sync_type=SyncType.MANUAL)
        finally:
            await provider.aclose()

        return connection, result

    def remove_connection(self, user_id: int, connection_id: int) -> bool:
        """
        Delete a connection. Its synced accounts stay but stop syncing.

        Returns:
            False when the connection does not exist for this user
        """
        connection = self.db.query(Connection).filter(
            Connection.id == connection_id,
            Connection.user_id == user_id
        ).first()
        if not connection:
            return False

        self.db.query(Account).filter(
            Account.user_id == user_id,
            Account.provider_item_id == connection.item_id
        ).update({Account.sync_enabled: False}, synchronize_session=False)

        self.db.delete(connection)
        self.db.commit()
        logger.info(f"Removed connection {connection.item_id} for user {user_id}")
        return True

    async def verify_credentials(self, client_id: str, client_secret: str) -> Dict[str, Any]:
        """
        Check a credential pair against the provider without storing it.

        Returns:
            {'valid': bool, 'message': str, ...health check fields}
        """
        try:
            provider = self.provider_factory(StoredCredentials(client_id=client_id, client_secret=client_secret))
        except InvalidCredentialsError as e:
            return {"valid": False, "message": str(e)}

        try:
            health = await provider.health_check()
        finally:
            await provider.aclose()

        valid = health.get("auth_status") == "authenticated"
        return {
            "valid": valid,
            "message": "Credentials accepted by provider" if valid else "Provider rejected the credentials",
            **health
        }

