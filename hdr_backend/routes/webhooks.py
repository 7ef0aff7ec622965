#  HDR Backend - Provider Webhook Route
#
#  Inbound callbacks from the enhancement provider. Authenticated by a
#  shared token, answered immediately; follow-up work runs in background.
#
#  Depends on: container.py, services/completion.py, middleware/auth.py
#  Used by:    app.py

import json
import logging

from dependency_injector.wiring import inject, Provide
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError as PydanticValidationError

from hdr_backend.container import Container
from hdr_backend.middleware.auth import verify_webhook_token
from hdr_backend.models.schemas import WebhookEvent
from hdr_backend.services.completion import CompletionService

logger = logging.getLogger("hdr.routes.webhooks")

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/autoenhance", dependencies=[Depends(verify_webhook_token)])
@inject
async def autoenhance_webhook(
    request: Request,
    completion: CompletionService = Depends(Provide[Container.completion]),
):
    body = await request.body()
    if not body.strip():
        # Provider liveness probe
        return {"status": "ok", "message": "webhook endpoint is active"}

    try:
        event = WebhookEvent.model_validate(json.loads(body))
    except (json.JSONDecodeError, UnicodeDecodeError, PydanticValidationError) as e:
        logger.warning("Malformed webhook body: %s", e)
        raise HTTPException(400, "invalid webhook payload")

    return completion.handle_event(event)
