from fastapi import status
from fastapi.responses import JSONResponse

from app.services import orchestrator


def requeued(trigger: str, **payload) -> JSONResponse:
    """Accept a trigger that lost the entity lock; a worker runs it later."""
    orchestrator.requeue(trigger, **payload)
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content={"status": "queued", "trigger": trigger},
    )
