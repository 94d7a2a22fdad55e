"""Presence bootstrap endpoints."""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends

from relay.domain.chat.schemas import OnlineUsersResponse, UserPresenceResponse
from relay.domain.realtime.container import RelayServices, get_services

router = APIRouter(prefix="/users", tags=["users"])


@router.get("", response_model=List[UserPresenceResponse])
async def list_users_endpoint(services: RelayServices = Depends(get_services)) -> List[UserPresenceResponse]:
	"""Persisted ``online`` flags, for clients that have no socket snapshot yet."""
	records = await services.users_repo.list_users()
	return [
		UserPresenceResponse(id=record.user_id, online=record.online, last_seen=record.last_seen)
		for record in records
	]


@router.get("/online", response_model=OnlineUsersResponse)
async def online_users_endpoint(services: RelayServices = Depends(get_services)) -> OnlineUsersResponse:
	return OnlineUsersResponse(users=sorted(services.presence.snapshot()))
