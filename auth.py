import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from bson.errors import InvalidId
from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, Field

from config import get_settings
from database import get_db, serialize_doc, to_object_id, utcnow
from schemas import Address, User as UserSchema

logger = structlog.get_logger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")
optional_oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)

router = APIRouter(prefix="/api/auth", tags=["auth"])

USER_PRIVATE_FIELDS = ("password_hash",)


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=50)
    phone: Optional[str] = Field(None, pattern=r"^\+?[\d\s\-()]{0,20}$")
    address: Optional[Address] = None


class PasswordChange(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=6)


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    settings = get_settings()
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def public_user(user: dict) -> dict:
    return serialize_doc(user, exclude=USER_PRIVATE_FIELDS)


def _user_from_token(token: str, db) -> dict:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Authentication token has expired")
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid authentication token")
    user_id = payload.get("sub")
    if user_id is None:
        raise HTTPException(status_code=401, detail="Could not validate credentials")
    try:
        user = db["user"].find_one({"_id": to_object_id(user_id)})
    except InvalidId:
        user = None
    if not user:
        raise HTTPException(status_code=401, detail="Could not validate credentials")
    if not user.get("is_active", True):
        raise HTTPException(status_code=401, detail="Account is deactivated")
    return user


def get_current_user(request: Request, token: str = Depends(oauth2_scheme), db=Depends(get_db)) -> dict:
    user = _user_from_token(token, db)
    request.state.user_id = str(user["_id"])
    return user


def get_optional_user(
    request: Request, token: Optional[str] = Depends(optional_oauth2_scheme), db=Depends(get_db)
) -> Optional[dict]:
    """Resolve the caller when a usable token is sent; anything else is a guest."""
    if not token:
        return None
    try:
        user = _user_from_token(token, db)
    except HTTPException as exc:
        logger.info("auth_ignored_for_guest", reason=exc.detail)
        return None
    request.state.user_id = str(user["_id"])
    return user


def get_current_admin(current: dict = Depends(get_current_user)) -> dict:
    if current.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")
    return current


def is_admin(user: Optional[dict]) -> bool:
    return bool(user) and user.get("role") == "admin"


def _token_response(user: dict, message: str) -> dict:
    token = create_access_token({"sub": str(user["_id"])})
    return {
        "success": True,
        "message": message,
        "access_token": token,
        "token_type": "bearer",
        "user": public_user(user),
    }


@router.post("/register", status_code=201)
def register(user: UserSchema, db=Depends(get_db)):
    email = user.email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(400, "User already exists with this email")
    data = user.model_dump(exclude={"password", "role", "is_active"})
    data.update({
        "email": email,
        "password_hash": get_password_hash(user.password),
        "role": "user",
        "is_active": True,
        "created_at": utcnow(),
        "last_login": None,
    })
    data["_id"] = db["user"].insert_one(data).inserted_id
    logger.info("user_registered", user_id=str(data["_id"]), email=email)
    return _token_response(data, "User registered successfully")


@router.post("/login")
def login(form_data: OAuth2PasswordRequestForm = Depends(), db=Depends(get_db)):
    email = form_data.username.lower()
    user = db["user"].find_one({"email": email})
    if not user:
        logger.warning("login_failed", email=email, reason="unknown_email")
        raise HTTPException(401, "Invalid credentials")
    if not user.get("is_active", True):
        logger.warning("login_failed", email=email, reason="deactivated")
        raise HTTPException(401, "Account is deactivated")
    if not verify_password(form_data.password, user.get("password_hash", "")):
        logger.warning("login_failed", email=email, reason="bad_password")
        raise HTTPException(401, "Invalid credentials")
    now = utcnow()
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"last_login": now}})
    user["last_login"] = now
    logger.info("user_logged_in", user_id=str(user["_id"]))
    return _token_response(user, "Login successful")


@router.get("/me")
def me(current: dict = Depends(get_current_user)):
    return {"success": True, "user": public_user(current)}


@router.put("/profile")
def update_profile(payload: ProfileUpdate, current: dict = Depends(get_current_user), db=Depends(get_db)):
    changes = payload.model_dump(exclude_unset=True)
    if "address" in changes and changes["address"] is not None:
        changes["address"] = payload.address.model_dump()
    if changes:
        changes["updated_at"] = utcnow()
        db["user"].update_one({"_id": current["_id"]}, {"$set": changes})
    user = db["user"].find_one({"_id": current["_id"]})
    logger.info("profile_updated", user_id=str(current["_id"]), fields=sorted(changes))
    return {"success": True, "message": "Profile updated successfully", "user": public_user(user)}


@router.put("/change-password")
def change_password(payload: PasswordChange, current: dict = Depends(get_current_user), db=Depends(get_db)):
    if not verify_password(payload.current_password, current.get("password_hash", "")):
        raise HTTPException(400, "Current password is incorrect")
    db["user"].update_one(
        {"_id": current["_id"]},
        {"$set": {"password_hash": get_password_hash(payload.new_password), "updated_at": utcnow()}},
    )
    logger.info("password_changed", user_id=str(current["_id"]))
    return {"success": True, "message": "Password changed successfully"}


@router.post("/upload-avatar")
def upload_avatar(
    avatar: UploadFile = File(...), current: dict = Depends(get_current_user), db=Depends(get_db)
):
    settings = get_settings()
    if not (avatar.content_type or "").startswith("image/"):
        raise HTTPException(400, "Only image files are allowed")
    content = avatar.file.read(settings.max_avatar_bytes + 1)
    if len(content) > settings.max_avatar_bytes:
        raise HTTPException(400, f"File too large. Maximum size allowed: {settings.max_avatar_bytes} bytes")
    ext = os.path.splitext(avatar.filename or "")[1].lower() or ".img"
    filename = f"avatar-{uuid.uuid4().hex}{ext}"
    os.makedirs(settings.upload_dir, exist_ok=True)
    with open(os.path.join(settings.upload_dir, filename), "wb") as fh:
        fh.write(content)
    avatar_url = f"/uploads/{filename}"
    db["user"].update_one({"_id": current["_id"]}, {"$set": {"avatar_url": avatar_url, "updated_at": utcnow()}})
    logger.info("avatar_uploaded", user_id=str(current["_id"]), size=len(content))
    return {"success": True, "message": "Avatar uploaded successfully", "avatar_url": avatar_url}
