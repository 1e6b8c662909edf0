import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from async_mail_queue.api import create_app
from async_mail_queue.config_loader import QueueSettings, load_settings
from async_mail_queue.core import AsyncMailQueue
from async_mail_queue.history import SqliteHistorySink
from async_mail_queue.transport import RecordingTransport, SMTPTransport, TemplateRenderer

# Configure logging level from environment
log_level = os.getenv("GMQ_LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format='[%(asctime)s] [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
    force=True  # Force reconfiguration to avoid duplicate handlers
)


def build_service(settings: QueueSettings) -> tuple[AsyncMailQueue, SqliteHistorySink | None]:
    """Wire transport, history sink and queue from the loaded settings."""
    if settings.smtp_host:
        renderer = TemplateRenderer(settings.templates_dir) if settings.templates_dir else None
        transport = SMTPTransport(
            settings.smtp_host,
            settings.smtp_port,
            user=settings.smtp_user,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            sender=settings.smtp_sender,
            renderer=renderer,
            timeout=settings.send_timeout,
        )
    else:
        logging.getLogger("AsyncMailQueue").warning(
            "SMTP host not configured, messages will only be recorded in memory"
        )
        transport = RecordingTransport()

    history_sink = SqliteHistorySink(settings.history_db_path) if settings.history_db_path else None
    service = AsyncMailQueue.from_settings(settings, transport, history_sink=history_sink)
    return service, history_sink


if __name__ == "__main__":
    settings = load_settings()
    service, history_sink = build_service(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup: prepare the delivery log and start ticking
        if history_sink is not None:
            await history_sink.init_db()
        await service.start()
        yield
        # Shutdown: let the current batch finish, start no new ones
        await service.stop()

    app = create_app(service, api_token=settings.api_token, lifespan=lifespan)

    uvicorn.run(app, host=settings.http_host, port=settings.http_port)
