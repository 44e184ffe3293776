from fastapi import APIRouter, Header
from fastapi.exceptions import HTTPException
from typing import Optional

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils
from utils.signature_utils import verify_api_key

# Services
from services.worker_service import WorkerService

# Exceptions
from exceptions.pipeline_exception import PipelineException

# Models
from models.request.process_pending_request import ProcessPendingRequest
from models.response.batch_result_response import BatchResult


def create_worker_api(
    log_util: LogUtil,
    environment_utils: EnvironmentUtils,
    worker_service: WorkerService
) -> APIRouter:
    """
    Internal endpoint used by the trigger (or an external scheduler) to run one worker batch.
    """
    router = APIRouter(
        prefix="/internal/worker",
        tags=["worker"],
    )

    @router.post("/process-pending", response_model=BatchResult)
    async def process_pending(
        process_request: Optional[ProcessPendingRequest] = None,
        x_api_key: Optional[str] = Header(None, alias="x-api-key")
    ) -> BatchResult:
        try:
            verify_api_key(x_api_key, environment_utils.get_env_variable("BACKEND_API_KEY"))

            process_request = process_request or ProcessPendingRequest()
            return await worker_service.process_pending_batch(
                batch_size=process_request.clamped_batch_size(),
                max_attempts=process_request.clamped_max_attempts()
            )
        except PipelineException as e:
            log_util.error(service_name="WorkerAPI", message=f"Error processing pending messages: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except Exception as e:
            log_util.error(service_name="WorkerAPI", message=f"Error processing pending messages: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    return router
