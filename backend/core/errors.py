import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from common.errors import AppError, StoreTransactionError

logger = logging.getLogger(__name__)


def _field_errors(exc: RequestValidationError):
    """pydantic error list -> [{field, message}] using the wire (camelCase) field names."""
    out = []
    for err in exc.errors():
        loc = [str(p) for p in err.get('loc', ()) if p not in ('body', 'query', 'path', 'header')]
        out.append({'field': '.'.join(loc) or 'body', 'message': err.get('msg', 'Invalid value')})
    return out


def install_handlers(app: FastAPI):
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(RequestValidationError)
    async def validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={'success': False, 'message': 'Validation failed', 'errors': _field_errors(exc)},
        )

    @app.exception_handler(Exception)
    async def unhandled_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=500, content=StoreTransactionError().to_payload())
