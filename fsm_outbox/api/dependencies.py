from fastapi import Depends
from sqlalchemy.ext.asyncio import async_sessionmaker

from fsm_outbox.core.redis import get_redis
from fsm_outbox.database import get_session_factory
from fsm_outbox.services.command_handler import InitializeFSMCommandHandler


async def get_command_handler(
		session_factory: async_sessionmaker = Depends(get_session_factory),
		redis_client=Depends(get_redis)
) -> InitializeFSMCommandHandler:
	return InitializeFSMCommandHandler(session_factory, redis_client)
