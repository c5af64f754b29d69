import asyncio
import logging

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from reconciler.alerts import AlertService
from reconciler.bootstrap import Services, build_services
from reconciler.config import Settings
from reconciler.consumer import start_consumer
from reconciler.database import init_db
from reconciler.errors import SignatureVerificationError
from reconciler.logging_config import configure_logging
from reconciler.results import HandlerResult
from reconciler.schemas import WebhookPayload
from reconciler.signature import SIGNATURE_HEADER, ensure_signature

logger = logging.getLogger(__name__)

app = FastAPI(title="Storefront Reconciler")


async def alert_retry_loop(alerts: AlertService, interval_seconds: float):
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            attempted = await alerts.retry_failed_alerts()
            if attempted:
                logger.info("Alert retry sweep attempted %d alerts", attempted)
        except Exception:
            logger.exception("Alert retry sweep failed")


@app.on_event("startup")
async def startup_event():
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    services = build_services(settings)
    await init_db(services.engine)

    app.state.services = services
    app.state.background_tasks = [
        asyncio.create_task(alert_retry_loop(services.alerts, settings.alert_retry_interval_seconds))
    ]

    if services.retry_queue is not None:
        try:
            await services.retry_queue.connect()
            await start_consumer(services.retry_queue, services.reconciler, settings)
        except Exception:
            logger.exception("Error setting up the webhook retry queue, continuing without it")
            services.retry_queue = None


@app.on_event("shutdown")
async def shutdown_event():
    for task in getattr(app.state, "background_tasks", []):
        task.cancel()
    services = getattr(app.state, "services", None)
    if services is not None:
        await services.close()


async def _respond(result: HandlerResult, payload: WebhookPayload, services: Services) -> JSONResponse:
    if not result.should_retry:
        return JSONResponse({"received": True, **result.as_dict()})

    if services.retry_queue is not None:
        try:
            await services.retry_queue.enqueue_retry(payload.model_dump(mode="json"))
            return JSONResponse({"received": True, "queued": True, **result.as_dict()})
        except Exception:
            logger.exception("Could not queue %s event %s for retry", payload.type, payload.event_id)

    # let Square redeliver
    return JSONResponse({"received": False, **result.as_dict()}, status_code=503)


@app.post("/api/webhooks/square")
async def square_webhook(request: Request):
    services: Services = request.app.state.services
    settings = services.settings
    body = await request.body()

    if settings.square_webhook_signature_key:
        signature = request.headers.get(SIGNATURE_HEADER)
        try:
            ensure_signature(body, signature, settings.square_webhook_signature_key, settings.square_webhook_url)
        except SignatureVerificationError as e:
            logger.warning("Rejected Square webhook: %s", e)
            raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        payload = WebhookPayload.model_validate_json(body)
    except ValidationError as e:
        logger.warning("Rejected malformed Square webhook: %s", e.errors()[:3])
        raise HTTPException(status_code=400, detail="Malformed webhook payload")

    result = await services.reconciler.process(payload)
    return await _respond(result, payload, services)


@app.get("/health")
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
