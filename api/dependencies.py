"""API Dependencies - Authentication and permissions"""
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from domain.auth import User, UserInDB
from domain.enums import Permission, Role
from infrastructure.collaborators import InMemoryUserDirectory, RolePermissionChecker
from infrastructure.security import SECRET_KEY, ALGORITHM, get_password_hash
from api.schemas import TokenData

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token")

DEFAULT_COMPANY_ID = "company-1"

# Mock database for users
# In production, this would be a database call
_fake_users_db = {
    "admin": {
        "username": "admin",
        "full_name": "Admin User",
        "email": "admin@example.com",
        "plain_password": "admin123",  # Will be hashed on first access
        "disabled": False,
        "user_id": "123e4567-e89b-12d3-a456-426614174000",
        "company_id": DEFAULT_COMPANY_ID,
        "role": Role.ADMIN,
    },
    "staff": {
        "username": "staff",
        "full_name": "Front Desk",
        "email": "staff@example.com",
        "plain_password": "staff123",
        "disabled": False,
        "user_id": "7c9e6679-7425-40de-944b-e07fc1f90ae7",
        "company_id": DEFAULT_COMPANY_ID,
        "role": Role.STAFF,
    },
    "alice": {
        "username": "alice",
        "full_name": "Alice Mensah",
        "email": "alice@example.com",
        "plain_password": "alice123",
        "disabled": False,
        "user_id": "b8a1f3c2-4d5e-4f60-8a9b-0c1d2e3f4a5b",
        "company_id": DEFAULT_COMPANY_ID,
        "role": Role.CUSTOMER,
    },
    "bob": {
        "username": "bob",
        "full_name": "Bob Owusu",
        "email": "bob@example.com",
        "plain_password": "bob123",
        "disabled": False,
        "user_id": "d4c3b2a1-0f9e-4d8c-b7a6-5f4e3d2c1b0a",
        "company_id": DEFAULT_COMPANY_ID,
        "role": Role.CUSTOMER,
    },
}

# Public alias for backwards compatibility
fake_users_db = _fake_users_db

# Service fee per company, as a fraction of the subtotal
fake_companies_db = {
    DEFAULT_COMPANY_ID: {"service_fee_rate": "0.02"},
}

# Cache for hashed passwords
_password_hash_cache = {}

permission_checker = RolePermissionChecker()

def _get_hashed_password(username: str) -> str:
    """Lazily hash passwords on first access"""
    if username not in _password_hash_cache:
        user = _fake_users_db.get(username)
        if user and "plain_password" in user:
            _password_hash_cache[username] = get_password_hash(user["plain_password"])
    return _password_hash_cache.get(username, "")

def get_user(db, username: str):
    if username in db:
        user_dict = db[username].copy()
        # Replace plain_password with hashed_password
        if "plain_password" in user_dict:
            user_dict["hashed_password"] = _get_hashed_password(username)
            del user_dict["plain_password"]
        return UserInDB(**user_dict)
    return None

def build_user_directory() -> InMemoryUserDirectory:
    """User directory keyed by user id, without credentials"""
    directory = InMemoryUserDirectory()
    for record in _fake_users_db.values():
        directory.add(User(**{k: v for k, v in record.items() if k != "plain_password"}))
    return directory

async def get_current_user(token: str = Depends(oauth2_scheme)):
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        username: str = payload.get("sub")
        if username is None:
            raise credentials_exception
        token_data = TokenData(username=username)
    except JWTError:
        raise credentials_exception

    user = get_user(_fake_users_db, username=token_data.username)
    if user is None:
        raise credentials_exception
    return user

async def get_current_active_user(current_user: User = Depends(get_current_user)):
    if current_user.disabled:
        raise HTTPException(status_code=400, detail="Inactive user")
    return current_user

def require_permission(permission: Permission):
    """Dependency factory: the active user, or 403 without the permission"""
    async def dependency(current_user: User = Depends(get_current_active_user)) -> User:
        if not await permission_checker.check(current_user, permission):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permission {permission.value}"
            )
        return current_user
    return dependency
