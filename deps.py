# deps.py
# Dependency injections for routes: database session, authentication, community ownership, provider client.

import logging
from typing import Annotated, AsyncGenerator, Optional

from fastapi import Depends, HTTPException, Path, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.ext.asyncio import AsyncSession

import auth_utils
import crud
from database import SessionLocal
from models import Community, User
from provider_client import ProviderClient

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token", auto_error=False)


# -----------------------
#  DATABASE DEPENDENCY
# -----------------------
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with SessionLocal() as session:
        yield session

SessionDep = Annotated[AsyncSession, Depends(get_db)]


# -----------------------
#  PROVIDER DEPENDENCY
# -----------------------
async def get_provider() -> AsyncGenerator[ProviderClient, None]:
    async with ProviderClient() as client:
        yield client

ProviderDep = Annotated[ProviderClient, Depends(get_provider)]


# ------------------------------------------------
#  BEARER TOKEN HANDLING
# ------------------------------------------------
async def get_current_user(
    db: SessionDep,
    bearer_token: Annotated[Optional[str], Depends(oauth2_scheme)] = None,
) -> User:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if bearer_token is None:
        logging.warning("Authentication failed: No token provided.")
        raise credentials_exception

    email = auth_utils.decode_access_token(bearer_token)
    if email is None:
        logging.warning("Authentication failed: Invalid or expired token.")
        raise credentials_exception

    user = await crud.get_user_by_email(db, email=email)
    if user is None:
        logging.warning(f"Authentication failed: User {email} not found.")
        raise credentials_exception

    if not user.is_active:
        raise HTTPException(status_code=400, detail="Inactive user")

    return user


CurrentUserDep = Annotated[User, Depends(get_current_user)]


# -----------------------
#  COMMUNITY OWNERSHIP
# -----------------------
async def get_owned_community(
    db: SessionDep,
    current_user: CurrentUserDep,
    community_id: Annotated[str, Path()],
) -> Community:
    """Only the owner may read or change a community's payout activation"""
    community = await crud.get_community(db, community_id)
    if community is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Community not found")
    if community.owner_id != current_user.id:
        logging.warning(f"User {current_user.id} denied access to community {community_id}")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Community not found or unauthorized")
    return community

OwnedCommunityDep = Annotated[Community, Depends(get_owned_community)]
