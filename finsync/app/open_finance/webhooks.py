"""
Webhook Event Router

Dispatches inbound provider notifications:
- item/*: connection lifecycle, status written straight onto the Connection
- transactions/*, accounts/*, credit_card_bills/*, investments/*, loans/*:
  resolve the owning user from the item id, then run the matching syncer
  over a narrowed window
- anything else: acknowledged as unhandled

Every dispatch returns {success, processed, message, error?}. Only a bad
signature (InvalidSignatureError) or a malformed body (pydantic
ValidationError) escape process_webhook; the HTTP layer maps those to 401/400.
"""

import hashlib
import hmac
import logging
from datetime import date, datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy.orm import Session

from finsync.config import Settings, get_settings
from finsync.app.models import Connection, ConnectionStatus, SyncType, User, WebhookLog
from .mappers import map_connection_status
from .providers.base import BaseAggregationProvider
from .providers.payloads import WebhookPayload
from .service import ProviderFactory, SyncService, connection_lock
from .syncers import (
    AccountSyncer, BillSyncer, InvestmentSyncer, LoanSyncer, SyncResult, TransactionSyncer
)

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="

ItemAction = Callable[[BaseAggregationProvider, int, str], Awaitable[SyncResult]]


class InvalidSignatureError(Exception):
    pass


def _result(success: bool, processed: bool, message: str, error: Optional[str] = None) -> Dict[str, Any]:
    result = {"success": success, "processed": processed, "message": message}
    if error:
        result["error"] = error
    return result


class WebhookRetryTracker:
    """
    Counts delivery attempts per webhook id over a trailing window.

    A webhook id that already has ``max_attempts`` attempts inside the window
    is acknowledged without being processed again.
    """

    def __init__(
        self,
        db: Session,
        max_attempts: int = 3,
        window_minutes: int = 60,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.db = db
        self.max_attempts = max_attempts
        self.window = timedelta(minutes=window_minutes)
        self._clock = clock

    def attempts(self, webhook_id: str) -> int:
        since = self._clock() - self.window
        return self.db.query(WebhookLog).filter(
            WebhookLog.webhook_id == webhook_id,
            WebhookLog.attempt_at >= since
        ).count()

    def should_process(self, webhook_id: str) -> bool:
        return self.attempts(webhook_id) < self.max_attempts

    def log_attempt(
        self,
        webhook_id: str,
        success: bool,
        event: Optional[str] = None,
        item_id: Optional[str] = None,
        error: Optional[str] = None
    ) -> None:
        self.db.add(WebhookLog(
            webhook_id=webhook_id,
            event=event,
            item_id=item_id,
            success=success,
            error_message=error,
            attempt_at=self._clock()
        ))
        self.db.commit()


class WebhookRouter:
    """
    Routes one parsed webhook to its handler.

    Example:
        >>> router = WebhookRouter(db)
        >>> await router.process_webhook(
        ...     {"event": "transactions/created", "itemId": "item-1"}
        ... )
        {'success': True, 'processed': True, 'message': 'Transactions for item item-1: 1 created, 0 updated'}
    """

    def __init__(
        self,
        db: Session,
        provider_factory: Optional[ProviderFactory] = None,
        settings: Optional[Settings] = None
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.service = SyncService(db, provider_factory, self.settings)
        self.credentials = self.service.credentials
        self.retry_tracker = WebhookRetryTracker(
            db,
            max_attempts=self.settings.webhook_max_attempts,
            window_minutes=self.settings.webhook_retry_window_minutes
        )

        self._handlers: Dict[str, Callable[[WebhookPayload], Awaitable[Dict[str, Any]]]] = {
            "item/created": self._handle_item_created,
            "item/updated": self._handle_item_updated,
            "item/login_error": self._handle_item_login_error,
            "item/outdated": self._handle_item_outdated,
            "item/webhook_error": self._handle_item_webhook_error,
            "transactions/created": self._handle_transactions_created,
            "transactions/updated": self._handle_transactions_updated,
            "transactions/deleted": self._handle_transactions_deleted,
        }
        self._category_handlers: Dict[str, Callable[[WebhookPayload], Awaitable[Dict[str, Any]]]] = {
            "accounts": self._handle_accounts,
            "credit_card_bills": self._handle_credit_card_bills,
            "investments": self._handle_investments,
            "loans": self._handle_loans,
        }

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def verify_signature(self, body: bytes, signature: Optional[str]) -> bool:
        """
        HMAC-SHA256 check of the raw body against ``webhook_secret``.

        Without a configured secret every payload is trusted.
        """
        secret = self.settings.webhook_secret
        if not secret:
            logger.debug("No webhook secret configured; trusting payload")
            return True
        if not signature:
            return False

        if signature.startswith(SIGNATURE_PREFIX):
            signature = signature[len(SIGNATURE_PREFIX):]
        expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature.strip().lower())

    async def process_webhook(
        self,
        payload: Dict[str, Any],
        signature: Optional[str] = None,
        raw_body: Optional[bytes] = None
    ) -> Dict[str, Any]:
        """
        Validate, de-duplicate by webhook id, and dispatch one webhook.

        Args:
            payload: Decoded JSON body
            signature: Signature header value, if any
            raw_body: Exact request bytes the signature was computed over.
                Required whenever a webhook secret is configured.

        Returns:
            {'success': bool, 'processed': bool, 'message': str, 'error'?: str}

        Raises:
            InvalidSignatureError: Signature check failed
            pydantic.ValidationError: Body is not a webhook payload
        """
        if self.settings.webhook_secret and raw_body is None:
            logger.warning("Rejected webhook without a body to verify against")
            raise InvalidSignatureError("Signature validation requires the raw request body")
        if raw_body is not None and not self.verify_signature(raw_body, signature):
            logger.warning("Rejected webhook with invalid signature")
            raise InvalidSignatureError("Signature validation failed")

        webhook = WebhookPayload.model_validate(payload)
        item_id = webhook.resolved_item_id
        logger.info(f"Processing webhook {webhook.event} for item {item_id}")

        if webhook.webhook_id and not self.retry_tracker.should_process(webhook.webhook_id):
            logger.warning(f"Webhook {webhook.webhook_id} exceeded {self.retry_tracker.max_attempts} attempts")
            return _result(
                True, False,
                f"Webhook {webhook.webhook_id} already attempted {self.retry_tracker.max_attempts} times"
            )

        try:
            result = await self.dispatch(webhook)
        except Exception as e:
            self.db.rollback()
            logger.exception(f"Webhook {webhook.event} for item {item_id} failed")
            result = _result(False, False, "Webhook processing failed", str(e))

        if webhook.webhook_id:
            self.retry_tracker.log_attempt(
                webhook.webhook_id,
                result["success"],
                event=webhook.event,
                item_id=item_id,
                error=result.get("error")
            )
        return result

    async def dispatch(self, webhook: WebhookPayload) -> Dict[str, Any]:
        handler = self._handlers.get(webhook.event)
        if handler is None:
            handler = self._category_handlers.get(webhook.event.split("/", 1)[0])
        if handler is None:
            logger.info(f"Unhandled webhook event: {webhook.event}")
            return _result(True, False, f"Unhandled event: {webhook.event}")
        return await handler(webhook)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _connections_for_item(self, item_id: str):
        return self.db.query(Connection).filter(Connection.item_id == item_id).all()

    def _resolve_new_owner(self, webhook: WebhookPayload, item_id: str) -> Optional[int]:
        client_user_id = webhook.data.client_user_id if webhook.data else None
        if client_user_id and client_user_id.isdigit():
            user = self.db.query(User).filter(User.id == int(client_user_id)).first()
            if user:
                return user.id
        return self.credentials.find_connection_owner(item_id)

    def _touch_connection(self, user_id: int, item_id: str) -> None:
        connection = self.credentials.get_connection(user_id, item_id)
        if connection:
            connection.last_sync_at = datetime.utcnow()
            self.db.commit()

    async def _run_for_item(self, webhook: WebhookPayload, label: str, action: ItemAction) -> Dict[str, Any]:
        item_id = webhook.resolved_item_id
        if not item_id:
            return _result(False, False, "No item ID provided")

        user_id = self.credentials.find_connection_owner(item_id)
        if user_id is None:
            return _result(False, False, f"No user found for item {item_id}")

        provider = self.service.get_provider(user_id)
        if provider is None:
            return _result(False, False, f"No provider credentials for user {user_id}")

        try:
            async with connection_lock(user_id, item_id):
                sync_result = await action(provider, user_id, item_id)
        finally:
            await provider.aclose()

        self._touch_connection(user_id, item_id)
        message = f"{label} for item {item_id}: {sync_result.created} created, {sync_result.updated} updated"
        if sync_result.permission_denied:
            message += f", {sync_result.permission_denied} permission denied"
        return _result(
            sync_result.success,
            True,
            message,
            "; ".join(sync_result.errors) or None
        )

    def _set_status(self, webhook: WebhookPayload, status: ConnectionStatus) -> Dict[str, Any]:
        item_id = webhook.resolved_item_id
        if not item_id:
            return _result(False, False, "No item ID provided")

        connections = self._connections_for_item(item_id)
        detail = webhook.data.status_detail if webhook.data else None
        for connection in connections:
            connection.status = status
            connection.status_detail = str(detail) if detail is not None else None
        self.db.commit()

        logger.info(f"Item {item_id} status set to {status.value} on {len(connections)} connections")
        return _result(True, bool(connections), f"Item {item_id} status updated to {status.value}")

    # ------------------------------------------------------------------
    # item/*
    # ------------------------------------------------------------------

    async def _handle_item_created(self, webhook: WebhookPayload) -> Dict[str, Any]:
        item_id = webhook.resolved_item_id
        if not item_id:
            return _result(False, False, "No item ID provided")

        user_id = self._resolve_new_owner(webhook, item_id)
        if user_id is None:
            return _result(False, False, f"No user found for item {item_id}")

        connection = self.credentials.get_connection(user_id, item_id)
        if connection is None:
            connection = Connection(user_id=user_id, item_id=item_id)
            self.db.add(connection)
        data = webhook.data
        connection.institution_name = (
            data.connector.name if data and data.connector else connection.institution_name or "Unknown Bank"
        )
        connection.status = map_connection_status(data.status if data else None)
        self.db.commit()
        self.db.refresh(connection)
        logger.info(f"Item {item_id} created for user {user_id}")

        provider = self.service.get_provider(user_id)
        if provider is None:
            return _result(True, True, f"Item {item_id} stored; credentials not configured, initial sync skipped")

        from_date = date.today() - timedelta(days=self.settings.initial_sync_days)
        try:
            sync_result = await self.service.sync_connection(
                connection, provider, from_date=from_date, sync_type=SyncType.WEBHOOK
            )
        finally:
            await provider.aclose()

        return _result(
            sync_result.success,
            True,
            f"Item {item_id} created and initial sync ran: {sync_result.created} created",
            "; ".join(sync_result.errors) or None
        )

    async def _handle_item_updated(self, webhook: WebhookPayload) -> Dict[str, Any]:
        return self._set_status(webhook, map_connection_status(webhook.data.status if webhook.data else None))

    async def _handle_item_login_error(self, webhook: WebhookPayload) -> Dict[str, Any]:
        return self._set_status(webhook, ConnectionStatus.LOGIN_ERROR)

    async def _handle_item_outdated(self, webhook: WebhookPayload) -> Dict[str, Any]:
        return self._set_status(webhook, ConnectionStatus.OUTDATED)

    async def _handle_item_webhook_error(self, webhook: WebhookPayload) -> Dict[str, Any]:
        return self._set_status(webhook, ConnectionStatus.WEBHOOK_ERROR)

    # ------------------------------------------------------------------
    # transactions/*
    # ------------------------------------------------------------------

    async def _handle_transactions_created(self, webhook: WebhookPayload) -> Dict[str, Any]:
        window = timedelta(hours=self.settings.transactions_webhook_window_hours)
        from_date = webhook.transactions_created_at_from or (datetime.utcnow() - window).date()
        to_date = webhook.transactions_created_at_to or date.today()

        async def action(provider: BaseAggregationProvider, user_id: int, item_id: str) -> SyncResult:
            accounts = None
            if webhook.account_id:
                accounts = [a for a in await provider.list_accounts(item_id) if a.id == webhook.account_id]
            return await TransactionSyncer(self.db, provider, user_id).sync(item_id, from_date, to_date, accounts)

        return await self._run_for_item(webhook, "Transactions", action)

    def _transaction_ids_owner(self, webhook: WebhookPayload):
        item_id = webhook.resolved_item_id
        if not item_id:
            return None, _result(False, False, "No item ID provided")
        if not webhook.transaction_ids:
            return None, _result(True, False, "No transaction IDs provided")
        user_id = self.credentials.find_connection_owner(item_id)
        if user_id is None:
            return None, _result(False, False, f"No user found for item {item_id}")
        return user_id, None

    async def _handle_transactions_updated(self, webhook: WebhookPayload) -> Dict[str, Any]:
        user_id, failure = self._transaction_ids_owner(webhook)
        if failure:
            return failure

        # Only status changes here; the content hash stays as first ingested
        syncer = TransactionSyncer(self.db, None, user_id)
        count = syncer.mark_updated(webhook.transaction_ids)
        return _result(True, count > 0, f"{count} transactions marked as updated")

    async def _handle_transactions_deleted(self, webhook: WebhookPayload) -> Dict[str, Any]:
        user_id, failure = self._transaction_ids_owner(webhook)
        if failure:
            return failure

        syncer = TransactionSyncer(self.db, None, user_id)
        count = syncer.delete_by_provider_ids(webhook.transaction_ids)
        logger.info(f"Deleted {count} transactions for item {webhook.resolved_item_id}")
        return _result(True, count > 0, f"{count} transactions deleted")

    # ------------------------------------------------------------------
    # accounts/*, credit_card_bills/*, investments/*, loans/*
    # ------------------------------------------------------------------

    async def _handle_accounts(self, webhook: WebhookPayload) -> Dict[str, Any]:
        async def action(provider: BaseAggregationProvider, user_id: int, item_id: str) -> SyncResult:
            return await AccountSyncer(self.db, provider, user_id).sync(item_id)

        return await self._run_for_item(webhook, "Accounts", action)

    async def _handle_credit_card_bills(self, webhook: WebhookPayload) -> Dict[str, Any]:
        to_date = date.today()
        from_date = to_date - timedelta(days=self.settings.bills_window_days)

        async def action(provider: BaseAggregationProvider, user_id: int, item_id: str) -> SyncResult:
            return await BillSyncer(self.db, provider, user_id).sync(item_id, from_date, to_date)

        return await self._run_for_item(webhook, "Credit card bills", action)

    async def _handle_investments(self, webhook: WebhookPayload) -> Dict[str, Any]:
        async def action(provider: BaseAggregationProvider, user_id: int, item_id: str) -> SyncResult:
            return await InvestmentSyncer(self.db, provider, user_id).sync(item_id)

        return await self._run_for_item(webhook, "Investments", action)

    async def _handle_loans(self, webhook: WebhookPayload) -> Dict[str, Any]:
        async def action(provider: BaseAggregationProvider, user_id: int, item_id: str) -> SyncResult:
            return await LoanSyncer(self.db, provider, user_id).sync(item_id)

        return await self._run_for_item(webhook, "Loans", action)
