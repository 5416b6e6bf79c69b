import logging

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.config import settings
from app.services.locks import EntityLockTimeout
from app.services.workflow_graph import WorkflowGraphError

logger = logging.getLogger(__name__)


def _error_payload(code: str, message: str, details):
    return {"code": code, "message": message, "details": details}


def register_error_handlers(app) -> None:
    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        detail = exc.detail
        code = f"http_{exc.status_code}"
        message = "Request failed"
        details = None
        if isinstance(detail, dict):
            code = detail.get("code", code)
            message = detail.get("message", message)
            details = detail.get("details")
        elif isinstance(detail, str):
            message = detail
        else:
            details = detail
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(code, message, details),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ):
        # ctx may hold the raised exception object.
        errors = [
            {k: str(v) if k == "ctx" else v for k, v in err.items() if k != "url"}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=422,
            content=jsonable_encoder(
                _error_payload("validation_error", "Validation error", errors)
            ),
        )

    @app.exception_handler(WorkflowGraphError)
    async def workflow_graph_handler(request: Request, exc: WorkflowGraphError):
        return JSONResponse(
            status_code=400,
            content=_error_payload("invalid_workflow", str(exc), exc.problems),
        )

    @app.exception_handler(EntityLockTimeout)
    async def entity_lock_handler(request: Request, exc: EntityLockTimeout):
        return JSONResponse(
            status_code=503,
            headers={"Retry-After": str(settings.lock_requeue_delay_seconds)},
            content=_error_payload(
                "entity_busy", str(exc), {"entity_id": str(exc.entity_id)}
            ),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content=_error_payload("internal_error", "Internal server error", None),
        )
