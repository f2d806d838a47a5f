import logging
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .errors import AppError, RateLimited, ValidationFailed

logger = logging.getLogger(__name__)


def setup_exception_handlers(app: FastAPI):
    @app.exception_handler(AppError)
    async def app_error_handler(request, exc: AppError):
        headers = None
        if isinstance(exc, RateLimited):
            headers = {'Retry-After': str(exc.retry_after)}
        if exc.status_code >= 500:
            logger.error({'msg': 'app_error', 'path': request.url.path, 'code': exc.code})
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request, exc):
        return JSONResponse(
            status_code=exc.status_code,
            content={'success': False, 'error': str(exc.detail)},
            headers=getattr(exc, 'headers', None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request, exc):
        details = [
            {'field': '.'.join(str(p) for p in err.get('loc', ()) if p != 'body'), 'message': err.get('msg')}
            for err in jsonable_encoder(exc.errors())
        ]
        return JSONResponse(status_code=400, content=ValidationFailed(details=details).to_dict())

    @app.exception_handler(Exception)
    async def generic_exception_handler(request, exc):
        logger.exception({'msg': 'unhandled_error', 'path': request.url.path})
        return JSONResponse(
            status_code=500,
            content={'success': False, 'error': 'Internal server error'},
        )
