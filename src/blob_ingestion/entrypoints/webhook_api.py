"""
Webhook entrypoint - thin API that parses notifications and dispatches commands.

Status codes tell an at-least-once event source what to do next:
200 accepted (or dropped on purpose), 400 never retry, 429/503 retry later.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Callable, List, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

import config
from blob_ingestion import bootstrap
from blob_ingestion.adapters import event_source
from blob_ingestion.adapters.event_source import MalformedPayload, UnsupportedEventType
from blob_ingestion.domain.commands import IngestBlob
from blob_ingestion.service_layer.dispatcher import CapacityExceeded, DispatcherClosed

logger = logging.getLogger(__name__)

RETRY_AFTER_SECONDS = "5"


class IngestionResponse(BaseModel):
    """Response model for an accepted batch"""
    status: str
    accepted: int
    ignored: int
    work_items: List[str]
    received_at: str


def create_app(
    service: Optional[bootstrap.Service] = None,
    service_factory: Callable[[], bootstrap.Service] = bootstrap.bootstrap,
) -> FastAPI:
    """Build the webhook app.

    An injected ``service`` is used as-is; otherwise one is built with
    ``service_factory`` when the app starts. The dispatcher runs for the
    lifetime of the app and running copies are cancelled on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.service = service or service_factory()
        app.state.service.dispatcher.start()
        logger.info("Lifespan startup: ready to accept blob events.")
        yield
        app.state.service.dispatcher.shutdown(cancel_running=True, timeout=30)
        logger.info("Lifespan shutdown.")

    app = FastAPI(
        title="Blob Ingestion Webhook",
        description="Receives blob creation notifications and copies new blobs to the destination container",
        version="1.0.0",
        lifespan=lifespan,
    )

    @app.get("/health")
    def health_check(request: Request):
        """Health check endpoint"""
        dispatcher = request.app.state.service.dispatcher
        return {
            "status": "healthy" if dispatcher.accepting else "draining",
            "service": "blob-ingestion-webhook",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "dispatcher": dispatcher.stats(),
        }

    @app.post("/events")
    async def receive_events(request: Request):
        """
        Receive one notification or a batch of them.

        The whole batch is parsed before anything is enqueued, so a malformed
        record rejects the batch cleanly. If the dispatcher runs out of room
        part-way through, the source redelivers the batch and the ledger
        absorbs the records that were already accepted.
        """
        raw = await request.body()
        bus = request.app.state.service.bus
        received_at = datetime.now(timezone.utc)

        try:
            records = event_source.load_records(raw)
            code = event_source.validation_code(records)
            if code is not None:
                logger.info("Answering Event Grid subscription validation")
                return {"validationResponse": code}

            parsed = []
            ignored = 0
            for record in records:
                try:
                    parsed.append(event_source.parse_record(record))
                except UnsupportedEventType as e:
                    logger.info(f"Dropping notification: {e}")
                    ignored += 1
        except MalformedPayload as e:
            logger.warning(f"Rejected malformed payload: {e}")
            return JSONResponse(status_code=400, content={"status": "rejected", "detail": str(e)})

        work_items = []
        try:
            for blob_event in parsed:
                item_id = bus.handle(IngestBlob(event=blob_event))
                if item_id is None:
                    ignored += 1
                else:
                    work_items.append(item_id)
        except CapacityExceeded as e:
            logger.warning(f"Backpressure, asking source to retry: {e}")
            return _retry_later(429, str(e))
        except DispatcherClosed as e:
            logger.warning(f"Dispatcher closed, asking source to retry: {e}")
            return _retry_later(503, str(e))

        return IngestionResponse(
            status="accepted",
            accepted=len(work_items),
            ignored=ignored,
            work_items=work_items,
            received_at=received_at.isoformat(),
        )

    return app


def _retry_later(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"status": "retry", "detail": detail},
        headers={"Retry-After": RETRY_AFTER_SECONDS},
    )


app = create_app()


def main():
    """Run the webhook with uvicorn."""
    logging.basicConfig(level=logging.INFO)
    port = int(config.get_api_url().rsplit(":", 1)[1])
    uvicorn.run(app, host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
