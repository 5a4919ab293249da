"""
Credential store adapter

Reads and writes per-user provider credentials and connection ownership.
Client secrets are kept encrypted in ``user_configs``.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.orm import Session

from finsync.app.models import Connection, UserConfig
from .encryption import SecretEncryption
from .exceptions import InvalidCredentialsError

logger = logging.getLogger(__name__)

CLIENT_ID_KEY = "pluggy_client_id"
CLIENT_SECRET_KEY = "pluggy_client_secret"


@dataclass
class StoredCredentials:
    client_id: str
    client_secret: str


class CredentialStore:

    def __init__(self, db: Session, encryption: Optional[SecretEncryption] = None):
        self.db = db
        self.encryption = encryption or SecretEncryption()

    def _get_config(self, user_id: int, key: str) -> Optional[UserConfig]:
        return self.db.query(UserConfig).filter(
            UserConfig.user_id == user_id,
            UserConfig.config_key == key
        ).first()

    def _set_config(self, user_id: int, key: str, value: str, encrypted: bool = False) -> None:
        config = self._get_config(user_id, key)
        stored = self.encryption.encrypt(value) if encrypted else value
        if config:
            config.config_value = stored
            config.is_encrypted = encrypted
        else:
            self.db.add(UserConfig(
                user_id=user_id,
                config_key=key,
                config_value=stored,
                is_encrypted=encrypted
            ))

    def get_credentials(self, user_id: int) -> Optional[StoredCredentials]:
        """
        Return the user's provider credentials, or None if either half is missing.

        Raises:
            InvalidCredentialsError: The stored secret cannot be decrypted
        """
        client_id = self._get_config(user_id, CLIENT_ID_KEY)
        client_secret = self._get_config(user_id, CLIENT_SECRET_KEY)

        if not client_id or not client_id.config_value or not client_secret or not client_secret.config_value:
            logger.info(f"No provider credentials configured for user {user_id}")
            return None

        secret = client_secret.config_value
        if client_secret.is_encrypted:
            try:
                secret = self.encryption.decrypt(secret)
            except ValueError as e:
                logger.error(f"Stored client secret for user {user_id} cannot be decrypted")
                raise InvalidCredentialsError(
                    "Stored client secret cannot be decrypted; save the provider credentials again"
                ) from e

        return StoredCredentials(client_id=client_id.config_value, client_secret=secret)

    def save_credentials(self, user_id: int, client_id: str, client_secret: str) -> None:
        self._set_config(user_id, CLIENT_ID_KEY, client_id)
        self._set_config(user_id, CLIENT_SECRET_KEY, client_secret, encrypted=True)
        self.db.commit()

    def find_connection_owner(self, item_id: str) -> Optional[int]:
        connection = self.db.query(Connection).filter(Connection.item_id == item_id).first()
        return connection.user_id if connection else None

    def get_connection(self, user_id: int, item_id: str) -> Optional[Connection]:
        return self.db.query(Connection).filter(
            Connection.user_id == user_id,
            Connection.item_id == item_id
        ).first()

    def list_connections(self, user_id: int) -> List[Connection]:
        return self.db.query(Connection).filter(
            Connection.user_id == user_id
        ).order_by(Connection.id).all()
