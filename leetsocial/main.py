import logging
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .core import CORS_ORIGINS, redis_startup, init_metrics, setup_logging, shutdown_connections
from .exception_handlers import setup_exception_handlers
from .ratelimit import RateLimiter
from .routes import router

# setup structured logging
setup_logging()
logger = logging.getLogger('leetsocial.http')

app = FastAPI(title="LeetSocial API", version=__version__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=CORS_ORIGINS != ['*'],
    allow_methods=['*'],
    allow_headers=['*'],
)

setup_exception_handlers(app)
app.state.rate_limiter = RateLimiter()

app.include_router(router, prefix="/api")

@app.get('/healthz')
async def healthz():
    return {'status': 'ok'}

@app.middleware('http')
async def log_requests(request: Request, call_next):
    logger.info({'msg': 'request_start', 'method': request.method, 'path': request.url.path})
    response = await call_next(request)
    logger.info({'msg': 'request_end', 'path': request.url.path, 'status': response.status_code})
    return response

@app.on_event("startup")
async def startup():
    # Best-effort init, don't block app from starting if a dependency fails
    try:
        await redis_startup()
    except Exception as e:
        logger.warning({'msg': 'redis_start_failed', 'error': str(e)})
    try:
        init_metrics()
    except Exception as e:
        logger.warning({'msg': 'metrics_init_failed', 'error': str(e)})

@app.on_event("shutdown")
async def shutdown():
    await shutdown_connections()
