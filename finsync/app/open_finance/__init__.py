"""
Open Finance Module

Bank aggregation sync against the Pluggy Open Finance API: token lifecycle,
rate-limited transport, typed gateway, entity syncers and webhook routing.
"""

from .service import SyncService
from .webhooks import WebhookRouter
from .deduplication import TransactionDeduplicator
from .encryption import SecretEncryption

__all__ = ['SyncService', 'WebhookRouter', 'TransactionDeduplicator', 'SecretEncryption']
