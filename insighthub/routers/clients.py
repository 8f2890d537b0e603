"""
Clients Router — The businesses a user reports on. Connections and
conversations hang off a client.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from insighthub.auth import get_current_user
from insighthub.database import get_db
from insighthub.models import Client, ClientStatus, User
from insighthub.utils import isoformat

logger = logging.getLogger(__name__)

router = APIRouter()


class ClientCreate(BaseModel):
    name: str
    email: Optional[EmailStr] = None
    website: Optional[str] = None


def _serialize(client: Client) -> dict:
    return {
        "id": str(client.id),
        "name": client.name,
        "email": client.email,
        "website": client.website,
        "status": client.status,
        "created_at": isoformat(client.created_at),
    }


@router.get("")
async def list_clients(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    result = await db.execute(
        select(Client)
        .where(Client.user_id == user.id, Client.status == ClientStatus.ACTIVE.value)
        .order_by(Client.name)
    )
    return [_serialize(c) for c in result.scalars().all()]


@router.post("")
async def create_client(
    payload: ClientCreate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Client name is required")

    existing = await db.execute(
        select(Client).where(
            Client.user_id == user.id,
            Client.name == name,
            Client.status == ClientStatus.ACTIVE.value,
        )
    )
    if existing.scalar_one_or_none():
        raise HTTPException(status_code=400, detail=f"A client named '{name}' already exists")

    client = Client(
        user_id=user.id,
        name=name,
        email=payload.email,
        website=payload.website,
        status=ClientStatus.ACTIVE.value,
    )
    db.add(client)
    await db.flush()
    logger.info(f"Created client {client.id} ({name}) for user {user.id}")
    return _serialize(client)
