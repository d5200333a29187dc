from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from clearance.db.documents import DocumentStore, InMemoryDocumentStore, create_document_store_from_env
from clearance.email import EmailSender, OutboxEmailSender
from clearance.events import TriggerPublisher
from clearance.identity import IdentityProvider, StoreIdentityProvider
from clearance.object_storage import ObjectStorageBackend, create_object_storage_from_env
from clearance.queue_backend import InMemoryQueueBackend, QueueBackend, create_queue_from_env
from clearance.repositories import (
    ApplicationsRepository,
    CountersRepository,
    NotificationsRepository,
    ProfilesRepository,
    ReviewQueueRepository,
)
from clearance.security import JwtSecurityConfig
from clearance.settings import WorkflowSettings, true_stack_required
from clearance.triggers import TriggerRegistry
from clearance.worker_runtime import WorkerRuntime
from clearance.workflow import register_triggers

logger = logging.getLogger(__name__)


@dataclass
class ServerContext:
    """Collaborators built once per process and handed to every handler."""

    store: DocumentStore
    queue: QueueBackend
    identity: IdentityProvider
    email_sender: EmailSender
    object_storage: ObjectStorageBackend
    settings: WorkflowSettings
    security_cfg: JwtSecurityConfig
    publisher: TriggerPublisher
    registry: TriggerRegistry
    worker: WorkerRuntime
    profiles: ProfilesRepository = field(init=False)
    applications: ApplicationsRepository = field(init=False)
    review_queue: ReviewQueueRepository = field(init=False)
    notifications: NotificationsRepository = field(init=False)
    counters: CountersRepository = field(init=False)

    def __post_init__(self) -> None:
        self.profiles = ProfilesRepository(self.store)
        self.applications = ApplicationsRepository(self.store)
        self.review_queue = ReviewQueueRepository(self.store)
        self.notifications = NotificationsRepository(self.store)
        self.counters = CountersRepository(self.store)


def build_context(
    *,
    store: DocumentStore,
    queue: QueueBackend,
    object_storage: ObjectStorageBackend,
    identity: IdentityProvider | None = None,
    email_sender: EmailSender | None = None,
    settings: WorkflowSettings | None = None,
    security_cfg: JwtSecurityConfig | None = None,
) -> ServerContext:
    settings = settings or WorkflowSettings()
    publisher = TriggerPublisher(queue)
    store.add_listener(publisher.on_change)
    registry = TriggerRegistry()
    worker = WorkerRuntime(
        store=store,
        queue_backend=queue,
        registry=registry,
        max_retries=settings.trigger_max_retries,
        backoff_base_ms=settings.trigger_backoff_base_ms,
        backoff_max_ms=settings.trigger_backoff_max_ms,
    )
    ctx = ServerContext(
        store=store,
        queue=queue,
        identity=identity or StoreIdentityProvider(store),
        email_sender=email_sender or OutboxEmailSender(store),
        object_storage=object_storage,
        settings=settings,
        security_cfg=security_cfg or JwtSecurityConfig.from_env(),
        publisher=publisher,
        registry=registry,
        worker=worker,
    )
    register_triggers(ctx)
    return ctx


def _create_queue_backend_for_runtime(env: Mapping[str, str]) -> QueueBackend:
    try:
        return create_queue_from_env(env)
    except RuntimeError:
        if true_stack_required(env):
            raise
        logger.warning("queue_backend_fallback backend=memory")
        return InMemoryQueueBackend()


def _create_store_for_runtime(env: Mapping[str, str]) -> DocumentStore:
    try:
        return create_document_store_from_env(env)
    except RuntimeError:
        if true_stack_required(env):
            raise
        logger.warning("document_store_fallback backend=memory")
        return InMemoryDocumentStore()


def create_context_from_env(environ: Mapping[str, str] | None = None) -> ServerContext:
    env = os.environ if environ is None else environ
    return build_context(
        store=_create_store_for_runtime(env),
        queue=_create_queue_backend_for_runtime(env),
        object_storage=create_object_storage_from_env(env),
        settings=WorkflowSettings.from_env(env),
        security_cfg=JwtSecurityConfig.from_env(env),
    )
