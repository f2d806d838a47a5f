import os
import asyncio
import logging
from prometheus_client import Counter, Gauge, start_http_server
from pythonjsonlogger.json import JsonFormatter

logger = logging.getLogger(__name__)

HOST = os.getenv('HOST', '0.0.0.0')
PORT = int(os.getenv('PORT', '3000'))
SOCKET_PORT = int(os.getenv('SOCKET_PORT', '3001'))
METRICS_PORT = int(os.getenv('METRICS_PORT', '9100'))
CORS_ORIGINS = [o.strip() for o in os.getenv('CORS_ORIGINS', '*').split(',') if o.strip()]
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()

FRIEND_REQUEST_COOLDOWN_HOURS = int(os.getenv('FRIEND_REQUEST_COOLDOWN_HOURS', '24'))
WS_IDLE_TIMEOUT_SECONDS = float(os.getenv('WS_IDLE_TIMEOUT_SECONDS', '120'))
WS_SEND_TIMEOUT_SECONDS = float(os.getenv('WS_SEND_TIMEOUT_SECONDS', '5'))
WS_MAX_FRAME_BYTES = int(os.getenv('WS_MAX_FRAME_BYTES', '65536'))

REDIS = None

WS_CONNECTIONS = Gauge('leetsocial_ws_connections', 'Open realtime gateway connections')
MESSAGES_SENT = Counter('leetsocial_chat_messages_total', 'Chat messages persisted')
RATE_LIMITED = Counter('leetsocial_rate_limited_total', 'Requests rejected by the rate limiter', ['kind'])


def setup_logging():
    """Attach a JSON handler to the package logger (idempotent)."""
    root = logging.getLogger('leetsocial')
    if any(getattr(h, '_leetsocial', False) for h in root.handlers):
        return root
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter('%(asctime)s %(levelname)s %(name)s %(message)s'))
    handler._leetsocial = True
    root.addHandler(handler)
    root.setLevel(LOG_LEVEL)
    return root


def init_metrics(port: int = METRICS_PORT):
    """Start the Prometheus exporter; port 0 disables it"""
    if not port:
        return
    try:
        start_http_server(port)
        logger.info(f"Prometheus metrics server started on port {port}")
    except Exception as e:
        logger.warning(f'Prometheus start failed: {e}')


def redis_url() -> str | None:
    url = os.getenv('REDIS_URL')
    if url:
        return url
    host = os.getenv('REDIS_HOST')
    if not host:
        return None
    port = os.getenv('REDIS_PORT', '6379')
    password = os.getenv('REDIS_PASSWORD')
    auth = f':{password}@' if password else ''
    return f'redis://{auth}{host}:{port}/0'


async def redis_startup():
    """Connect to Redis if configured. The app keeps running without it."""
    global REDIS

    url = redis_url()
    if not url:
        logger.info("Redis not configured, running without cache")
        REDIS = None
        return

    from redis import asyncio as aioredis

    max_retries = 3
    retry_delay = 3  # seconds

    for attempt in range(max_retries):
        client = None
        try:
            logger.info(f"Attempting to connect to Redis (attempt {attempt + 1}/{max_retries})")
            client = aioredis.from_url(
                url,
                decode_responses=True,
                max_connections=20,
                health_check_interval=30,
                socket_connect_timeout=5,
                socket_timeout=5,
            )
            await client.ping()
            REDIS = client
            logger.info("Redis connected successfully")
            return
        except Exception as e:
            logger.warning(f'Redis startup attempt {attempt + 1} failed: {e}')
            if client is not None:
                try:
                    await client.aclose()
                except Exception as close_error:
                    logger.debug(f'Redis close after failed startup: {close_error}')
            REDIS = None
            if attempt < max_retries - 1:
                logger.info(f"Retrying Redis connection in {retry_delay} seconds...")
                await asyncio.sleep(retry_delay)
            else:
                logger.error("Failed to connect to Redis after all retries, cache disabled")


async def shutdown_connections():
    """Gracefully shutdown shared connections"""
    global REDIS
    logger.info("Shutting down connections...")

    if REDIS:
        try:
            await REDIS.aclose()
            logger.info("Redis connection closed")
        except Exception as e:
            logger.error(f"Error closing Redis connection: {e}")
        REDIS = None

    from .models import engine
    await engine.dispose()
