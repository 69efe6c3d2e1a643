from datetime import datetime, timedelta, timezone
from typing import Optional
from jose import jwt
from passlib.context import CryptContext
import hashlib
import hmac

from config import settings

SECRET_KEY = settings.SECRET_KEY
ALGORITHM = settings.ALGORITHM
ACCESS_TOKEN_EXPIRE_MINUTES = settings.ACCESS_TOKEN_EXPIRE_MINUTES

pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    # bcrypt 4.x compatibility: explicitly handle password length
    bcrypt__ident="2b"
)

def _prepare_password(password: str) -> str:
    """
    Prepare password for bcrypt to handle strings > 72 bytes.
    bcrypt has a 72-byte password limit. If password is longer,
    we pre-hash it with SHA256 to get a safe length string.
    """
    password_bytes = password.encode('utf-8')
    if len(password_bytes) > 72:
        return hashlib.sha256(password_bytes).hexdigest()
    return password

def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify password against hash"""
    return pwd_context.verify(_prepare_password(plain_password), hashed_password)

def get_password_hash(password: str) -> str:
    """Generate password hash"""
    return pwd_context.hash(_prepare_password(password))

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create JWT access token"""
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=15)

    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt

def sign_webhook_payload(payload: bytes, secret: Optional[str] = None) -> str:
    """HMAC-SHA512 hex digest the gateway sends alongside a callback"""
    key = (secret or settings.GATEWAY_WEBHOOK_SECRET).encode()
    return hmac.new(key, payload, hashlib.sha512).hexdigest()

def verify_webhook_signature(payload: bytes, signature: Optional[str], secret: Optional[str] = None) -> bool:
    """Constant-time comparison of the received signature"""
    if not signature:
        return False
    expected = sign_webhook_payload(payload, secret).encode()
    return hmac.compare_digest(expected, signature.encode("utf-8", "surrogateescape"))
