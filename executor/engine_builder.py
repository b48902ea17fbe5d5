import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from api_clients.contact_client import ContactClient
from api_clients.orchestrator_client import OrchestratorStore
from config import EngineConfig
from dispatchers.base_dispatcher import ActionDispatcher
from dispatchers.mock_dispatchers import CrmDispatcher, EmailDispatcher, SmsDispatcher
from dispatchers.routing_dispatcher import RoutingDispatcher
from dispatchers.webhook_dispatcher import WebhookDispatcher
from executor.dag_compiler import WorkflowCache
from executor.dag_executor import DagExecutor
from executor.errors import RunNotFoundError
from executor.run_coordinator import RunCoordinator
from ingestion.dedup_gate import DedupGate
from ingestion.event_intake import EventIntake, IntakeResult
from ingestion.workflow_matcher import WorkflowMatcher
from models.workflow import ActionType, Workflow, WorkflowDefinition
from recipes.recipe_packs import install_recipe_pack
from scheduler.job_scheduler import JobScheduler
from scheduler.worker_pool import WorkerPool
from storage.base_store import AutomationStore, ContactDirectory
from storage.memory_store import InMemoryContactDirectory, InMemoryStore
from utils.retry import RetryManager
from utils.time_utils import utcnow

logger = logging.getLogger("automation_engine")


class AutomationEngine:
    """Wired-up engine: the façade the HTTP layer and worker processes talk to."""

    def __init__(self, store: AutomationStore, contacts: Optional[ContactDirectory], intake: EventIntake,
                 executor: DagExecutor, workers: WorkerPool, cache: WorkflowCache):
        self.store = store
        self.contacts = contacts
        self.intake = intake
        self.executor = executor
        self.coordinator = executor.coordinator
        self.scheduler = executor.scheduler
        self.workers = workers
        self.cache = cache

    async def submit_event(self, business_id: str, intent: str, payload: Optional[Dict[str, Any]] = None,
                           dedupe_key: Optional[str] = None, **kwargs) -> IntakeResult:
        return await self.intake.submit_event(business_id, intent, payload, dedupe_key, **kwargs)

    def cancel_run(self, run_id: str, reason: str) -> bool:
        return self.coordinator.cancel(run_id, reason)

    async def poll(self) -> Dict[str, int]:
        return await self.workers.run_once()

    def get_run_details(self, run_id: str) -> Dict[str, Any]:
        run = self.store.get_run(run_id)
        if run is None:
            raise RunNotFoundError(f"Run {run_id} not found")
        return {
            "run": run,
            "jobs": self.store.list_jobs_for_run(run_id),
            "logs": self.store.list_logs(run_id),
        }

    def save_workflow(self, definition: WorkflowDefinition) -> None:
        self.store.save_workflow(definition)
        self.cache.invalidate(definition.workflow.id)

    def install_recipe_pack(self, business_id: str, industry: str, pack_id: str) -> List[Workflow]:
        installed = install_recipe_pack(self.store, business_id, industry, pack_id)
        for workflow in installed:
            self.cache.invalidate(workflow.id)
        return installed


class EngineBuilder:

    @staticmethod
    def validate_config(config: EngineConfig):
        """Validates cross-field settings. Raises ValueError if invalid."""
        if config.store_backend == "orchestrator" and not config.orchestrator_url:
            raise ValueError("STORE_BACKEND=orchestrator requires ORCHESTRATOR_URL")
        if config.retry_base_seconds > config.retry_max_seconds:
            raise ValueError("RETRY_BASE_SECONDS cannot exceed RETRY_MAX_SECONDS")

    @staticmethod
    def default_dispatcher(config: EngineConfig) -> ActionDispatcher:
        crm = CrmDispatcher()
        return RoutingDispatcher({
            ActionType.SEND_EMAIL.value: EmailDispatcher(),
            ActionType.SEND_SMS.value: SmsDispatcher(),
            ActionType.MAKE_CALL.value: SmsDispatcher(),
            ActionType.CREATE_TASK.value: crm,
            ActionType.MOVE_PIPELINE_STAGE.value: crm,
            ActionType.CREATE_LEAD.value: crm,
            ActionType.CALL_WEBHOOK.value: WebhookDispatcher(timeout=config.orchestrator_timeout),
        })

    @staticmethod
    def build(
        config: EngineConfig,
        store: Optional[AutomationStore] = None,
        contacts: Optional[ContactDirectory] = None,
        dispatcher: Optional[ActionDispatcher] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> AutomationEngine:
        EngineBuilder.validate_config(config)

        if store is None:
            if config.store_backend == "orchestrator":
                store = OrchestratorStore(base_url=config.orchestrator_url, timeout=config.orchestrator_timeout)
            else:
                store = InMemoryStore()
        if contacts is None:
            if config.store_backend == "orchestrator":
                contacts = ContactClient(base_url=config.orchestrator_url, timeout=config.orchestrator_timeout)
            else:
                contacts = InMemoryContactDirectory()
        dispatcher = dispatcher or EngineBuilder.default_dispatcher(config)

        retry = RetryManager(
            max_attempts=config.max_job_attempts,
            base_delay=config.retry_base_seconds,
            max_delay=config.retry_max_seconds,
        )
        cache = WorkflowCache(store)
        coordinator = RunCoordinator(store, clock=clock, max_runtime=timedelta(minutes=config.max_runtime_minutes))
        scheduler = JobScheduler(store, retry=retry, clock=clock, batch_size=config.job_batch_size,
                                 claim_lease_seconds=config.claim_lease_seconds)
        executor = DagExecutor(
            store,
            dispatcher,
            coordinator,
            cache,
            scheduler,
            retry=retry,
            contacts=contacts,
            clock=clock,
            max_steps_per_drive=config.max_steps_per_drive,
        )
        gate = DedupGate(store, clock=clock, default_window_minutes=config.default_dedupe_window_minutes)
        matcher = WorkflowMatcher(store, cache, contacts=contacts, clock=clock, max_steps=config.max_steps)
        intake = EventIntake(store, gate, matcher, executor, clock=clock)
        workers = WorkerPool(scheduler, executor, worker_count=config.worker_count)

        logger.info(f"Automation engine built (store={type(store).__name__}, workers={config.worker_count})")
        return AutomationEngine(store, contacts, intake, executor, workers, cache)
