from __future__ import annotations

import asyncio

from loguru import logger

from recipe_ingest.config import settings
from recipe_ingest.ingest.extract.llm import LlmRecipeExtractor
from recipe_ingest.ingest.extract.service import ExtractionService
from recipe_ingest.ingest.fetch.service import FetchService
from recipe_ingest.ingest.guardrail.repair import RepairParaphraseService
from recipe_ingest.ingest.guardrail.service import GuardrailService
from recipe_ingest.ingest.guardrail.similarity import SimilarityDetector
from recipe_ingest.ingest.lifecycle.expiration import DraftExpirationSweeper
from recipe_ingest.ingest.lifecycle.service import DraftLifecycleService
from recipe_ingest.ingest.normalize.application import PatchApplicationService
from recipe_ingest.ingest.normalize.service import NormalizeService
from recipe_ingest.ingest.pipeline.runner import IngestPhaseRunner
from recipe_ingest.llm_client import CompletionClient, LlmClient
from recipe_ingest.models.task import Task
from recipe_ingest.services.streaming import ProgressBroker
from recipe_ingest.storage.base import ArtifactStore, RecipeStore, TaskStore
from recipe_ingest.storage.filesystem import LocalArtifactStore
from recipe_ingest.storage.memory import InMemoryArtifactStore, InMemoryRecipeStore, InMemoryTaskStore
from recipe_ingest.storage.retention import ArtifactRetentionSweeper
from recipe_ingest.tools.brave_search import BraveSearchProvider
from recipe_ingest.tools.google_search import GoogleSearchProvider
from recipe_ingest.tools.search_provider import SearchProvider, SearchProviderResolver


class IngestServices:
    """Process-wide wiring of stores, pipeline and lifecycle services."""

    def __init__(
        self,
        *,
        task_store: TaskStore,
        recipe_store: RecipeStore,
        artifact_store: ArtifactStore,
        broker: ProgressBroker,
        runner: IngestPhaseRunner,
        lifecycle: DraftLifecycleService,
        patches: PatchApplicationService,
        search_resolver: SearchProviderResolver,
        sweeper: DraftExpirationSweeper,
        retention: ArtifactRetentionSweeper,
        run_pipelines: bool = True,
    ):
        self.task_store = task_store
        self.recipe_store = recipe_store
        self.artifact_store = artifact_store
        self.broker = broker
        self.runner = runner
        self.lifecycle = lifecycle
        self.patches = patches
        self.search_resolver = search_resolver
        self.sweeper = sweeper
        self.retention = retention
        self.run_pipelines = run_pipelines
        self._running: dict[str, tuple[asyncio.Task, asyncio.Event]] = {}
        self._background: list[asyncio.Task] = []
        self._background_cancel = asyncio.Event()

    def schedule(self, task: Task) -> asyncio.Task | None:
        """Run the pipeline for a stored task in the background."""
        if not self.run_pipelines:
            logger.debug(f"Pipeline scheduling disabled, task {task.task_id} stays Pending")
            return None
        cancel = asyncio.Event()
        job = asyncio.create_task(self.runner.run(task, cancel), name=f"ingest-{task.task_id}")
        self._running[task.task_id] = (job, cancel)
        job.add_done_callback(lambda _: self._running.pop(task.task_id, None))
        return job

    def cancel(self, task_id: str) -> asyncio.Task | None:
        """Signal a running pipeline to stop. Returns its job, or None when nothing runs."""
        entry = self._running.get(task_id)
        if entry is None:
            return None
        job, cancel = entry
        cancel.set()
        logger.info(f"Cancellation requested for task {task_id}")
        return job

    def start_background_jobs(self) -> None:
        if self._background:
            return
        self._background_cancel = asyncio.Event()
        if settings.expiration_sweep_enabled:
            self._background.append(
                asyncio.create_task(
                    self.sweeper.run_forever(cancel=self._background_cancel),
                    name="draft-expiration-sweeper",
                )
            )
        if settings.artifact_retention_enabled:
            self._background.append(
                asyncio.create_task(
                    self.retention.run_forever(cancel=self._background_cancel),
                    name="artifact-retention-sweeper",
                )
            )

    async def shutdown(self) -> None:
        self._background_cancel.set()
        for _, cancel in list(self._running.values()):
            cancel.set()
        pending = [job for job, _ in self._running.values()] + self._background
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._background = []
        logger.info("Ingest services shut down")


def build_artifact_store() -> ArtifactStore:
    backend = settings.artifact_backend.strip().lower()
    if backend == "local":
        return LocalArtifactStore(settings.artifacts_dir)
    if backend != "memory":
        logger.warning(f"Unknown artifact backend '{settings.artifact_backend}', using memory")
    return InMemoryArtifactStore()


def build_search_providers() -> list[SearchProvider]:
    return [BraveSearchProvider(), GoogleSearchProvider()]


def build_services(
    *,
    llm: CompletionClient | None = None,
    fetch_service: FetchService | None = None,
    search_providers: list[SearchProvider] | None = None,
    task_store: TaskStore | None = None,
    recipe_store: RecipeStore | None = None,
    artifact_store: ArtifactStore | None = None,
    run_pipelines: bool = True,
) -> IngestServices:
    llm = llm or LlmClient()
    task_store = task_store or InMemoryTaskStore()
    recipe_store = recipe_store or InMemoryRecipeStore()
    artifact_store = artifact_store or build_artifact_store()
    broker = ProgressBroker()

    detector = SimilarityDetector()
    repair = RepairParaphraseService(llm, detector)
    search_resolver = SearchProviderResolver(
        search_providers if search_providers is not None else build_search_providers(),
        settings.search_default_provider,
    )
    normalize = NormalizeService(llm)

    runner = IngestPhaseRunner(
        task_store=task_store,
        artifact_store=artifact_store,
        fetch_service=fetch_service or FetchService(),
        extraction_service=ExtractionService(llm_extractor=LlmRecipeExtractor(llm)),
        guardrail=GuardrailService(detector, repair),
        recipe_store=recipe_store,
        search_resolver=search_resolver,
        normalize_service=normalize,
        publish=broker.publish,
    )
    lifecycle = DraftLifecycleService(
        task_store,
        recipe_store,
        artifact_store=artifact_store,
        repair_service=repair,
    )
    return IngestServices(
        task_store=task_store,
        recipe_store=recipe_store,
        artifact_store=artifact_store,
        broker=broker,
        runner=runner,
        lifecycle=lifecycle,
        patches=PatchApplicationService(task_store, recipe_store, normalize),
        search_resolver=search_resolver,
        sweeper=DraftExpirationSweeper(lifecycle),
        retention=ArtifactRetentionSweeper(artifact_store, task_store),
        run_pipelines=run_pipelines,
    )


_services: IngestServices | None = None


def get_services() -> IngestServices:
    """Get or create the process-wide service container."""
    global _services
    if _services is None:
        _services = build_services()
    return _services


def set_services(services: IngestServices | None) -> None:
    global _services
    _services = services
