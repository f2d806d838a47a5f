"""Run the HTTP API and the realtime gateway side by side in one process."""
import asyncio
import contextlib
import logging
import signal

import uvicorn

from .core import HOST, PORT, SOCKET_PORT, LOG_LEVEL, setup_logging

logger = logging.getLogger('leetsocial')


class _Server(uvicorn.Server):
    # signals are handled once for both servers in serve_all()
    def install_signal_handlers(self):
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


async def serve_all():
    servers = [
        _Server(uvicorn.Config('leetsocial.main:app', host=HOST, port=PORT, log_level=LOG_LEVEL.lower())),
        _Server(uvicorn.Config('leetsocial.gateway:realtime_app', host=HOST, port=SOCKET_PORT,
                               log_level=LOG_LEVEL.lower(), ws_ping_interval=20, ws_ping_timeout=20)),
    ]

    def stop():
        for s in servers:
            s.should_exit = True

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop)

    logger.info({'msg': 'starting', 'http_port': PORT, 'socket_port': SOCKET_PORT})
    await asyncio.gather(*(s.serve() for s in servers))


def main():
    setup_logging()
    asyncio.run(serve_all())


if __name__ == '__main__':
    main()
