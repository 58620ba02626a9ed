from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from fsm_outbox.database import get_session
from fsm_outbox.schemas.outbox import OutboxStatsResponse
from fsm_outbox.services.outbox_service import OutboxService

router = APIRouter()


@router.get("/stats", response_model=OutboxStatsResponse)
async def get_outbox_stats(session: AsyncSession = Depends(get_session)):
	"""Pending / processed / failing outbox counts"""
	stats = await OutboxService(session).get_stats()
	return OutboxStatsResponse(**stats)
