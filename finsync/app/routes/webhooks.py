import json
import logging
from typing import Optional
from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

from finsync.database import get_db
from finsync.app import schemas
from finsync.app.open_finance.service import ProviderFactory, get_provider_factory
from finsync.app.open_finance.webhooks import InvalidSignatureError, WebhookRouter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/pluggy", response_model=schemas.WebhookResponse)
async def pluggy_webhook(
    request: Request,
    x_pluggy_signature: Optional[str] = Header(None),
    db: Session = Depends(get_db),
    provider_factory: ProviderFactory = Depends(get_provider_factory)
):
    """
    Receive a Pluggy webhook.

    Recognized events are always acknowledged with 200, including when their
    processing failed; the failure is reported in the body. Bodies that are
    not webhook payloads get 400, bad signatures 401.
    """
    raw_body = await request.body()
    try:
        payload = json.loads(raw_body or b"null")
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body is not valid JSON")

    webhook_router = WebhookRouter(db, provider_factory)
    try:
        return await webhook_router.process_webhook(payload, x_pluggy_signature, raw_body=raw_body)
    except InvalidSignatureError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
    except ValidationError as e:
        logger.warning(f"Malformed webhook payload: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Malformed webhook payload: {e.errors()[0]['msg']}"
        )
