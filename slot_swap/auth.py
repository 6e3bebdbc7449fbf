# auth.py

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel

from slot_swap.config import ACCESS_TOKEN_EXPIRE_MINUTES, ALGORITHM, SECRET_KEY
from slot_swap.data_models import new_id, utcnow
from slot_swap.database import database
from slot_swap.models import users

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token", auto_error=False)


# Pydantic Models
class TokenPayload(BaseModel):
    """What a verified bearer credential says about its holder."""
    user_id: str
    email: str


class User(BaseModel):
    id: str
    name: str
    email: str


class Token(BaseModel):
    access_token: str
    token_type: str


class UserCreate(BaseModel):
    name: str
    email: str
    password: str


async def get_user_by_email(email: str):
    query = users.select().where(users.c.email == email.lower())
    return await database.fetch_one(query)


async def get_user_by_id(user_id: str):
    query = users.select().where(users.c.id == user_id)
    return await database.fetch_one(query)


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(payload: TokenPayload, expires_delta: Optional[timedelta] = None) -> str:
    if expires_delta is None:
        expires_delta = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode = {
        "sub": payload.user_id,
        "email": payload.email,
        "exp": datetime.now(timezone.utc) + expires_delta,
    }
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def verify_token(token: str) -> Optional[TokenPayload]:
    """Returns the holder of a valid token, or None for anything else."""
    try:
        claims = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError as exc:
        logger.info("Token verification failed: %s", exc)
        return None
    user_id = claims.get("sub")
    email = claims.get("email")
    if not user_id or not email:
        return None
    return TokenPayload(user_id=user_id, email=email)


async def create_user(user: UserCreate) -> User:
    record = {
        "id": new_id(),
        "name": user.name.strip(),
        "email": user.email.strip().lower(),
        "hashed_password": pwd_context.hash(user.password),
        "created_at": utcnow(),
    }
    await database.execute(users.insert().values(**record))
    logger.info("Registered user %s", record["id"])
    return User(id=record["id"], name=record["name"], email=record["email"])


async def authenticate_user(email: str, password: str) -> Optional[User]:
    user_record = await get_user_by_email(email)
    if not user_record or not verify_password(password, user_record["hashed_password"]):
        return None
    return User(id=user_record["id"], name=user_record["name"], email=user_record["email"])


# Used by every protected API route
async def get_current_user(token: Optional[str] = Depends(oauth2_scheme)) -> TokenPayload:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorized. Please provide a valid token.",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if token is None:
        raise credentials_exception
    payload = verify_token(token)
    if payload is None:
        raise credentials_exception
    return payload
