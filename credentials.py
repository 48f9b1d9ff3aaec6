"""Per-user OAuth credentials for the upstream providers.

Tokens are kept one file per (user, provider), Fernet-encrypted when
``TOKEN_ENC_KEY`` is set. ``get_token`` refreshes a token that expires within
``REFRESH_BUFFER_SECONDS`` before handing it out, so executors never see an
access token that is about to lapse.
"""
import asyncio
import hashlib
import json
import os
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field, replace
from datetime import timezone
from typing import Callable, Dict, Optional, Tuple

import requests
from cryptography.fernet import Fernet, InvalidToken
from google.auth.transport.requests import Request as GoogleRequest
from google.oauth2.credentials import Credentials

from errors import NotConnected
from utils import logger, safe_exception_message

TOKEN_STORE_DIR = os.environ.get("TOKEN_STORE_DIR", ".tokens")
TOKEN_ENC_KEY = os.environ.get("TOKEN_ENC_KEY")
XERO_CLIENT_ID = os.environ.get("XERO_CLIENT_ID")
XERO_CLIENT_SECRET = os.environ.get("XERO_CLIENT_SECRET")
GOOGLE_CLIENT_ID = os.environ.get("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.environ.get("GOOGLE_CLIENT_SECRET")

XERO_TOKEN_URL = "https://identity.xero.com/connect/token"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
REFRESH_BUFFER_SECONDS = 300
PROVIDERS = ("xero", "gmail")


@dataclass(frozen=True)
class Credential:
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[float] = None
    scopes: Tuple[str, ...] = field(default_factory=tuple)
    tenant_id: Optional[str] = None

    def expires_within(self, seconds: float, now: float) -> bool:
        return self.expires_at is not None and self.expires_at - now < seconds

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["scopes"] = list(self.scopes)
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> "Credential":
        expires_at = data.get("expires_at")
        if expires_at is None and data.get("expires_in") is not None:
            expires_at = time.time() + int(data["expires_in"])
        scopes = data.get("scopes") or data.get("scope") or ()
        if isinstance(scopes, str):
            scopes = scopes.split()
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=float(expires_at) if expires_at is not None else None,
            scopes=tuple(scopes),
            tenant_id=data.get("tenant_id"),
        )


class CredentialProvider(ABC):
    @abstractmethod
    async def get_token(self, user_id: str, provider: str) -> Credential:
        """Valid credential for the user's connection, or NotConnected."""


class StaticCredentialProvider(CredentialProvider):
    """Fixed credentials keyed by (user_id, provider); used in tests and local runs."""

    def __init__(self, credentials: Optional[Dict[Tuple[str, str], Credential]] = None):
        self._credentials = dict(credentials or {})

    def add(self, user_id: str, provider: str, credential: Credential) -> None:
        self._credentials[(user_id, provider)] = credential

    async def get_token(self, user_id, provider):
        credential = self._credentials.get((user_id, provider))
        if credential is None:
            raise NotConnected(provider)
        return credential


class EncryptedFileCredentialProvider(CredentialProvider):
    def __init__(self, directory: str = TOKEN_STORE_DIR, encryption_key: str | bytes | None = None,
                 clock: Callable[[], float] = time.time):
        self.directory = directory
        key = encryption_key if encryption_key is not None else TOKEN_ENC_KEY
        if not key:
            logger.warning("TOKEN_ENC_KEY not set; tokens will not be encrypted!")
        self._fernet = Fernet(key) if key else None
        self._clock = clock
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        os.makedirs(directory, exist_ok=True)

    def _path(self, user_id: str, provider: str) -> str:
        digest = hashlib.sha256(user_id.encode("utf-8")).hexdigest()[:24]
        return os.path.join(self.directory, f"{digest}.{provider}.enc")

    def _encrypt(self, data: bytes) -> bytes:
        return self._fernet.encrypt(data) if self._fernet else data

    def _decrypt(self, data: bytes) -> bytes:
        if not self._fernet:
            return data
        try:
            return self._fernet.decrypt(data)
        except InvalidToken:
            raise ValueError("Invalid encryption key or corrupted token file")

    def load(self, user_id: str, provider: str) -> Optional[Credential]:
        path = self._path(user_id, provider)
        if not os.path.exists(path):
            return None
        with open(path, "rb") as f:
            return Credential.from_dict(json.loads(self._decrypt(f.read())))

    def save_token(self, user_id: str, provider: str, credential: Credential) -> None:
        if provider not in PROVIDERS:
            raise ValueError(f"unknown provider {provider!r}")
        path = self._path(user_id, provider)
        tmp = f"{path}.tmp"
        with open(tmp, "wb") as f:
            f.write(self._encrypt(json.dumps(credential.to_dict()).encode("utf-8")))
        os.replace(tmp, path)

    async def get_token(self, user_id, provider):
        lock = self._locks.setdefault((user_id, provider), asyncio.Lock())
        loop = asyncio.get_running_loop()
        async with lock:
            try:
                credential = await loop.run_in_executor(None, self.load, user_id, provider)
            except ValueError as exc:
                logger.error("Failed to load %s tokens for %s: %s", provider, user_id, exc)
                raise NotConnected(provider)
            if credential is None:
                raise NotConnected(provider)
            if not credential.expires_within(REFRESH_BUFFER_SECONDS, self._clock()):
                return credential
            if not credential.refresh_token:
                raise NotConnected(provider)
            logger.info("%s token for %s expires soon; refreshing", provider, user_id)
            try:
                refreshed = await loop.run_in_executor(None, self._refresh, provider, credential)
            except Exception as exc:
                logger.error("Token refresh failed for %s (%s): %s", user_id, provider, safe_exception_message(exc))
                raise NotConnected(provider)
            await loop.run_in_executor(None, self.save_token, user_id, provider, refreshed)
            return refreshed

    def _refresh(self, provider: str, credential: Credential) -> Credential:
        if provider == "xero":
            return refresh_xero_token(credential)
        if provider == "gmail":
            return refresh_google_token(credential)
        raise ValueError(f"unknown provider {provider!r}")


def refresh_xero_token(credential: Credential) -> Credential:
    response = requests.post(XERO_TOKEN_URL, data={
        "grant_type": "refresh_token",
        "refresh_token": credential.refresh_token,
    }, auth=(XERO_CLIENT_ID, XERO_CLIENT_SECRET), timeout=10)
    response.raise_for_status()
    tokens = response.json()
    return replace(
        Credential.from_dict(tokens),
        refresh_token=tokens.get("refresh_token") or credential.refresh_token,
        tenant_id=credential.tenant_id,
    )


def refresh_google_token(credential: Credential) -> Credential:
    creds = Credentials(
        token=credential.access_token,
        refresh_token=credential.refresh_token,
        token_uri=GOOGLE_TOKEN_URL,
        client_id=GOOGLE_CLIENT_ID,
        client_secret=GOOGLE_CLIENT_SECRET,
        scopes=list(credential.scopes) or None,
    )
    creds.refresh(GoogleRequest())
    # google-auth keeps expiry as a naive UTC datetime
    expires_at = creds.expiry.replace(tzinfo=timezone.utc).timestamp() if creds.expiry else None
    return replace(credential, access_token=creds.token, expires_at=expires_at,
                   refresh_token=creds.refresh_token or credential.refresh_token)
