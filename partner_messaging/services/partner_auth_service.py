"""
Partner Token Service - account-level Gupshup partner authentication

Obtains the partner bearer token, keeps one valid copy in memory, persists
encrypted copies so restarts do not force a login, and prunes stored history.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from partner_messaging.core.cache import TTLCache, utc_now
from partner_messaging.core.config import Settings
from partner_messaging.core.encryption import CredentialVault, EncryptedSecret
from partner_messaging.core.exceptions import (
    AuthenticationError,
    ConflictError,
    DecryptionError,
    ExternalServiceError,
)
from partner_messaging.core.http_client import HTTPClient, parse_json, raise_for_gateway_status
from partner_messaging.db.models import PartnerApiToken, as_utc

logger = logging.getLogger(__name__)

PARTNER_TOKEN_CACHE_KEY = "partner_token"


@dataclass
class PartnerToken:
    value: str
    issued_at: datetime
    expires_at: datetime


class PartnerAuthService:
    """
    Partner token lifecycle.

    Lookup order is memory cache, then the newest unexpired persisted row,
    then a fresh login. Concurrent callers that all miss the cache may each
    log in; the gateway issues a valid token either way.
    """

    def __init__(
        self,
        db: Session,
        vault: CredentialVault,
        http_client: HTTPClient,
        settings: Settings,
        cache: Optional[TTLCache] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        """
        Initialize partner auth service

        Args:
            db: Database session
            vault: Encrypts tokens at rest
            http_client: Gateway HTTP client
            settings: Application settings (credentials, TTL, history limit)
            cache: Process-wide token cache shared across service instances
            clock: Source of the current time
        """
        self.db = db
        self.vault = vault
        self.http = http_client
        self.settings = settings
        self.cache = cache or TTLCache(clock=clock)
        self.clock = clock
        self.base_url = settings.gupshup_partner_base_url.rstrip("/")

    async def get_token(self) -> str:
        """
        Return a valid partner token, logging in only when required.

        Returns:
            Partner bearer token

        Raises:
            AuthenticationError: If the gateway rejects the login or the response is malformed
        """
        cached = self.cache.get(PARTNER_TOKEN_CACHE_KEY)
        if cached:
            return cached

        stored = self._load_persisted_token()
        if stored:
            self.cache.set(PARTNER_TOKEN_CACHE_KEY, stored.value, stored.expires_at)
            logger.info("Partner token restored from storage")
            return stored.value

        token = await self._login()
        self.cache.set(PARTNER_TOKEN_CACHE_KEY, token.value, token.expires_at)
        self._persist_token(token)
        return token.value

    def invalidate(self) -> None:
        """Drop the in-memory token, e.g. after the gateway answers 401."""
        self.cache.delete(PARTNER_TOKEN_CACHE_KEY)
        logger.info("Partner token cache invalidated")

    def _load_persisted_token(self) -> Optional[PartnerToken]:
        now = self.clock()
        record = self.db.query(PartnerApiToken).filter(
            PartnerApiToken.expires_at > now
        ).order_by(PartnerApiToken.id.desc()).first()

        if not record:
            return None

        try:
            value = self.vault.decrypt(EncryptedSecret(
                ciphertext=record.encrypted_token,
                iv=record.iv,
                auth_tag=record.auth_tag
            ))
        except DecryptionError as e:
            logger.error(f"Stored partner token {record.id} could not be decrypted: {e}")
            return None

        return PartnerToken(
            value=value,
            issued_at=as_utc(record.created_at),
            expires_at=as_utc(record.expires_at)
        )

    async def _login(self) -> PartnerToken:
        """
        Exchange the static partner credentials for a bearer token.

        Raises:
            AuthenticationError: On rejection or a response without a token
        """
        logger.info("Logging in to Gupshup partner account")
        response = await self.http.post(
            f"{self.base_url}/account/login",
            data={
                "email": self.settings.gupshup_partner_email,
                "password": self.settings.gupshup_partner_password
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            operation="partner_login"
        )

        try:
            raise_for_gateway_status(response, "partner_login")
        except (ExternalServiceError, ConflictError) as e:
            raise AuthenticationError(f"Partner login rejected: {e.message}", context=e.context)

        payload = parse_json(response)
        token = payload.get("token") if isinstance(payload, dict) else None
        if not token or not isinstance(token, str):
            logger.error("Partner login response did not contain a token")
            raise AuthenticationError("Malformed partner login response", context={"operation": "partner_login"})

        issued_at = self.clock()
        logger.info("Partner login succeeded")
        return PartnerToken(
            value=token,
            issued_at=issued_at,
            expires_at=issued_at + timedelta(hours=self.settings.partner_token_ttl_hours)
        )

    def _persist_token(self, token: PartnerToken) -> None:
        encrypted = self.vault.encrypt(token.value)
        try:
            self.db.add(PartnerApiToken(
                encrypted_token=encrypted.ciphertext,
                iv=encrypted.iv,
                auth_tag=encrypted.auth_tag,
                expires_at=token.expires_at,
                created_at=token.issued_at
            ))
            self.db.flush()
            self._prune_history()
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to persist partner token: {e}")
            raise

    def _prune_history(self) -> None:
        limit = self.settings.partner_token_history_limit
        keep_ids = [
            row.id for row in self.db.query(PartnerApiToken.id)
            .order_by(PartnerApiToken.id.desc())
            .limit(limit)
            .all()
        ]
        deleted = self.db.query(PartnerApiToken).filter(
            ~PartnerApiToken.id.in_(keep_ids)
        ).delete(synchronize_session=False)
        if deleted:
            logger.debug(f"Pruned {deleted} old partner token record(s)")
