import base64
import hashlib
import json
import logging
import os
import threading
import time
from datetime import datetime, timedelta, timezone

from cryptography.exceptions import InvalidKey
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from fastapi import HTTPException, Request
from jose import JWTError, jwt

from errors import NotFound, ValidationError

logger = logging.getLogger(__name__)

# --- Configuration ---
ALGORITHM = "HS256"
PBKDF2_ITERATIONS = 240_000
HASH_PREFIX = "pbkdf2_sha256"


# --- Password Hashing ---
def _kdf(salt: bytes, iterations: int) -> PBKDF2HMAC:
    return PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt, iterations=iterations)


def hash_password(password: str) -> str:
    """Hashes a password as `pbkdf2_sha256$iterations$salt$hash`."""
    salt = os.urandom(16)
    digest = _kdf(salt, PBKDF2_ITERATIONS).derive(password.encode())
    return "$".join([
        HASH_PREFIX,
        str(PBKDF2_ITERATIONS),
        base64.b64encode(salt).decode(),
        base64.b64encode(digest).decode(),
    ])


def verify_password(password: str, encoded: str) -> bool:
    try:
        prefix, iterations, salt, digest = encoded.split("$")
    except (AttributeError, ValueError):
        return False
    if prefix != HASH_PREFIX:
        return False
    try:
        _kdf(base64.b64decode(salt), int(iterations)).verify(password.encode(), base64.b64decode(digest))
    except (InvalidKey, ValueError):
        return False
    return True


# --- JWT Session Management ---
def create_access_token(data: dict, secret_key: str, expires_delta: timedelta | None = None) -> str:
    """Creates a JWT access token."""
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=15)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, secret_key, algorithm=ALGORITHM)


def decode_access_token(token: str, secret_key: str) -> dict | None:
    try:
        return jwt.decode(token, secret_key, algorithms=[ALGORITHM])
    except JWTError:
        return None


def _token_from_request(request: Request) -> str | None:
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        return header.split(None, 1)[1].strip()
    return request.cookies.get("access_token")


def session_refusal(repository, user: dict) -> str | None:
    """Why an already-issued token must no longer be honoured for `user`, or None."""
    if user.get("isLocked"):
        return "Account is locked"
    if user.get("status", "active") != "active":
        return "Account is inactive"
    if user.get("role") == "master_admin":
        return None
    try:
        hostel = repository.get("hostels", user.get("hostelId"))
    except NotFound:
        return "Hostel is inactive"
    if hostel.get("status", "active") != "active":
        return "Hostel is inactive"
    return None


# Dependency to get the current user from the bearer token (or cookie)
def get_current_user(request: Request) -> dict:
    """
    Decodes the JWT from the request to authenticate and identify the user.
    """
    credentials_exception = HTTPException(
        status_code=401,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    token = _token_from_request(request)
    if not token:
        raise HTTPException(
            status_code=401,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = decode_access_token(token, request.app.state.settings.jwt_secret_key)
    if payload is None or payload.get("sub") is None:
        raise credentials_exception

    repository = request.app.state.repository
    try:
        user = repository.get("users", payload["sub"])
    except NotFound:
        raise credentials_exception
    refusal = session_refusal(repository, user)
    if refusal:
        raise HTTPException(status_code=403, detail=refusal)
    user.pop("passwordHash", None)
    user.pop("password", None)
    return user


# --- One-time Credentials ---
class CredentialVault:
    """
    Seals generated credentials into short-lived, single-use Fernet tokens.

    Plaintext passwords are returned once in the creating response; the sealed
    token lets a client fetch them again exactly once within the TTL.
    """

    def __init__(self, key: str | None, ttl_seconds: int):
        if not key:
            logger.warning("CREDENTIAL_KEY is not set; one-time credential tokens will not survive a restart")
            key = Fernet.generate_key().decode()
        self.fernet = Fernet(key.encode() if isinstance(key, str) else key)
        self.ttl_seconds = ttl_seconds
        self._redeemed = {}
        self._lock = threading.Lock()

    def seal(self, payload: dict) -> str:
        token = self.fernet.encrypt(json.dumps(payload).encode()).decode()
        logger.info("Issued one-time credentials for %s", payload.get("email"))
        return token

    def redeem(self, token: str) -> dict:
        try:
            data = self.fernet.decrypt(token.encode(), ttl=self.ttl_seconds)
        except InvalidToken:
            raise ValidationError("Credential token is invalid or expired", field="token")

        digest = hashlib.sha256(token.encode()).hexdigest()
        now = time.time()
        with self._lock:
            self._redeemed = {d: expiry for d, expiry in self._redeemed.items() if expiry > now}
            if digest in self._redeemed:
                raise ValidationError("Credential token has already been used", field="token")
            self._redeemed[digest] = now + self.ttl_seconds

        payload = json.loads(data)
        logger.info("Redeemed one-time credentials for %s", payload.get("email"))
        return payload
