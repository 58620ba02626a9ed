# =====================================
# fsm_outbox/api/v1/fsm.py
# =====================================
import asyncio
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fsm_outbox.api.dependencies import get_command_handler
from fsm_outbox.core.exceptions import CommandValidationError
from fsm_outbox.database import get_session
from fsm_outbox.models.fsm_event import FSMEvent, InitiatedBy
from fsm_outbox.models.fsm_state import FSMState
from fsm_outbox.schemas.fsm import (
	FSMEventResponse,
	FSMStateSnapshot,
	InitializeFSMRequest,
	InitializeFSMResult,
	OutboxEntrySnapshot,
)
from fsm_outbox.services.command_handler import InitializeFSMCommandHandler
from fsm_outbox.services.outbox_service import OutboxService

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/initialize", response_model=InitializeFSMResult, response_model_by_alias=False)
async def initialize_fsm(
		request: InitializeFSMRequest,
		x_idempotency_key: Optional[str] = Header(None, alias="X-Idempotency-Key"),
		handler: InitializeFSMCommandHandler = Depends(get_command_handler)
):
	"""
	Atomically initialize an entity's FSM and enqueue its jobs.

	Replaying the same idempotency key returns the original result with
	`from_cache=true` and writes nothing.
	"""
	command = request.model_dump()
	command["idempotency_key"] = x_idempotency_key or request.idempotency_key
	command["initiated_by"] = InitiatedBy.API

	try:
		return await handler.handle(command)
	except CommandValidationError as e:
		raise HTTPException(
			status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
			detail={"message": str(e), "errors": e.errors}
		)
	except IntegrityError as e:
		# Not an idempotency race: replaying the request hits the same constraint
		logger.warning(f"FSM initialization for {request.entity_id} conflicts with existing rows: {e.orig!r}")
		raise HTTPException(
			status_code=status.HTTP_409_CONFLICT,
			detail="Conflicts with an existing outbox entry (duplicate outbox_id)"
		)
	except (SQLAlchemyError, asyncio.TimeoutError) as e:
		logger.error(f"FSM initialization for {request.entity_id} failed, store unavailable: {e!r}")
		raise HTTPException(
			status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
			detail="FSM store unavailable, retry with the same idempotency key"
		)


@router.get("/{entity_id}", response_model=FSMStateSnapshot)
async def get_fsm_state(
		entity_id: str,
		session: AsyncSession = Depends(get_session)
):
	"""Current FSM state of an entity"""
	fsm_state = await session.get(FSMState, entity_id)
	if not fsm_state:
		raise HTTPException(
			status_code=status.HTTP_404_NOT_FOUND,
			detail="FSM state not found"
		)
	return FSMStateSnapshot.model_validate(fsm_state)


@router.get("/{entity_id}/events", response_model=List[FSMEventResponse])
async def list_fsm_events(
		entity_id: str,
		skip: int = Query(0, ge=0),
		limit: int = Query(100, ge=1, le=1000),
		session: AsyncSession = Depends(get_session)
):
	"""Transition history of an entity, oldest first"""
	result = await session.execute(
		select(FSMEvent)
		.where(FSMEvent.entity_id == entity_id)
		.order_by(FSMEvent.created_at)
		.offset(skip)
		.limit(limit)
	)
	return [FSMEventResponse.model_validate(event) for event in result.scalars().all()]


@router.get("/{entity_id}/outbox", response_model=List[OutboxEntrySnapshot])
async def list_outbox_entries(
		entity_id: str,
		session: AsyncSession = Depends(get_session)
):
	"""Jobs enqueued for an entity, with their dispatch status"""
	entries = await OutboxService(session).list_for_entity(entity_id)
	return [OutboxEntrySnapshot.model_validate(entry) for entry in entries]
