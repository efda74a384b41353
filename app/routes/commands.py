"""Voice command route: free text in, structured payload out."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from app.dependencies import get_command_service
from app.schemas.commands import CommandRequest, CommandResponse
from app.services.alert_coordinator import NotificationContext
from app.services.command_service import CommandService

router = APIRouter(prefix="/commands", tags=["commands"])


def _map_error(exc: Exception) -> HTTPException:
	if isinstance(exc, ValueError):
		return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
	return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="command failure")


@router.post("", response_model=CommandResponse)
async def execute_command(
	payload: CommandRequest,
	service: CommandService = Depends(get_command_service),
) -> CommandResponse:
	context = NotificationContext.from_envelope(payload.envelope)
	try:
		return await service.execute(payload.text, batch_id=payload.batch_id, context=context)
	except Exception as exc:
		raise _map_error(exc) from exc
