import asyncio
from typing import Optional, Set
import httpx

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils

# Services
from services.worker_service import WorkerService
from services.trigger_debouncer import TriggerDebouncer

PROCESS_PENDING_PATH = "/internal/worker/process-pending"


class WorkerTriggerService:
    """
    Best-effort, debounced invoker of the worker. Runs the worker in-process
    unless WORKER_BASE_URL points at a remote worker endpoint. Claim semantics
    in the worker keep overlapping runs safe.
    """

    def __init__(
        self,
        log_util: LogUtil,
        environment_utils: EnvironmentUtils,
        worker_service: WorkerService,
        debouncer: Optional[TriggerDebouncer] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.log_util = log_util
        self.worker_service = worker_service
        base_url = str(environment_utils.get_env_variable("WORKER_BASE_URL")).strip()
        self.worker_url = f"{base_url.rstrip('/')}{PROCESS_PENDING_PATH}" if base_url else None
        self.api_key = environment_utils.get_env_variable("BACKEND_API_KEY")
        self.timeout = float(environment_utils.get_env_variable("WORKER_TRIGGER_TIMEOUT_SECONDS"))
        self.debouncer = debouncer or TriggerDebouncer(
            window_seconds=float(environment_utils.get_env_variable("WORKER_TRIGGER_WINDOW_SECONDS"))
        )
        self.transport = transport
        # Strong references so pending tasks are not garbage collected
        self._tasks: Set[asyncio.Task] = set()

    def notify_new_messages(self) -> Optional[asyncio.Task]:
        """
        Fire-and-forget: schedule a trigger on the running event loop.
        """
        task = asyncio.get_running_loop().create_task(self.trigger())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def trigger(self) -> bool:
        """
        Run or request one worker batch.

        Returns:
            True if a run was attempted, False if debounced. Never raises.
        """
        if not self.debouncer.try_acquire():
            self.log_util.debug(
                service_name="WorkerTriggerService",
                message="Worker trigger skipped due to in-flight request"
            )
            return False

        try:
            if self.worker_url:
                await self._trigger_remote()
            else:
                result = await self.worker_service.process_pending_batch()
                self.log_util.info(
                    service_name="WorkerTriggerService",
                    message=f"Worker processed batch locally: {result.model_dump()}"
                )
        except Exception as e:
            self.log_util.error(
                service_name="WorkerTriggerService",
                message=f"Worker trigger failed: {str(e)}"
            )
        finally:
            self.debouncer.release()
        return True

    async def _trigger_remote(self) -> None:
        headers = {
            "Content-Type": "application/json",
            "x-api-key": str(self.api_key)
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.worker_url, json={}, headers=headers)
        except httpx.TimeoutException:
            self.log_util.error(
                service_name="WorkerTriggerService",
                message=f"Timeout while triggering remote worker at {self.worker_url}"
            )
            return

        if response.status_code != 200:
            self.log_util.warning(
                service_name="WorkerTriggerService",
                message=f"Worker trigger responded with non-200 status: {response.status_code} - {response.text}"
            )
            return

        self.log_util.info(
            service_name="WorkerTriggerService",
            message=f"Worker triggered successfully (remote): {response.text}"
        )
