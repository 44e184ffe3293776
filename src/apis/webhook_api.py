import json
from fastapi import APIRouter, Header, Query, Request, Response
from fastapi.exceptions import HTTPException
from typing import Dict, Any, Optional

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils
from utils.signature_utils import verify_signature

# Services
from services.intake_service import IntakeService

# Exceptions
from exceptions.pipeline_exception import PipelineException, ValidationException

# Models
from models.response.webhook_intake_response import WebhookIntakeResponse


def create_webhook_api(
    log_util: LogUtil,
    environment_utils: EnvironmentUtils,
    intake_service: IntakeService
) -> APIRouter:
    """
    WhatsApp Cloud API webhook: subscription handshake and message delivery.
    """
    router = APIRouter(
        prefix="/webhooks",
        tags=["webhooks"],
    )

    @router.get("/whatsapp")
    async def verify_whatsapp_webhook(
        hub_mode: Optional[str] = Query(None, alias="hub.mode"),
        hub_verify_token: Optional[str] = Query(None, alias="hub.verify_token"),
        hub_challenge: Optional[str] = Query(None, alias="hub.challenge")
    ) -> Response:
        """
        Meta calls this once when the webhook is registered and expects the
        challenge echoed back when the verify token matches.
        """
        expected_token = environment_utils.get_env_variable("WHATSAPP_VERIFY_TOKEN")
        if expected_token and hub_mode == "subscribe" and hub_verify_token == expected_token and hub_challenge is not None:
            log_util.info(service_name="WebhookAPI", message="WhatsApp webhook verified successfully")
            return Response(status_code=200, content=hub_challenge, media_type="text/plain")

        log_util.warning(service_name="WebhookAPI", message=f"WhatsApp webhook verification failed (mode={hub_mode})")
        raise HTTPException(status_code=403, detail="Invalid verification token")

    @router.post("/whatsapp", response_model=WebhookIntakeResponse)
    async def receive_whatsapp_webhook(
        request: Request,
        x_hub_signature_256: Optional[str] = Header(None, alias="X-Hub-Signature-256")
    ) -> WebhookIntakeResponse:
        """
        Store inbound WhatsApp messages.

        The signature is checked against the raw body before anything is
        parsed or stored. Extraction happens later in the worker.
        """
        body = await request.body()
        try:
            verify_signature(body, x_hub_signature_256, environment_utils.get_env_variable("WHATSAPP_APP_SECRET"))

            try:
                payload = json.loads(body)
            except ValueError:
                raise ValidationException("Webhook body is not valid JSON")

            result = await intake_service.store_incoming_messages(payload)
            return WebhookIntakeResponse(
                status="success",
                message="Webhook stored",
                **result.model_dump()
            )
        except PipelineException as e:
            log_util.warning(service_name="WebhookAPI", message=f"Rejected WhatsApp webhook ({e.status_code}): {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except Exception as e:
            log_util.error(service_name="WebhookAPI", message=f"Error handling WhatsApp webhook: {str(e)}")
            raise HTTPException(status_code=500, detail="Failed to process webhook")

    @router.get("/health")
    async def webhook_health_check() -> Dict[str, Any]:
        """Health check endpoint for webhook API"""
        return {
            "status": "healthy",
            "api": "webhook_api",
            "service": "listing_intake_service"
        }

    return router
