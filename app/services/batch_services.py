"""Explicit construction of the batch upload services for one process."""
from dataclasses import dataclass
from typing import Callable, Optional

import httpx
import redis

from app.config import Settings
from app.services.ai_client import ChatCompletionClient
from app.services.background import run_detached, schedule_after
from app.services.batch_store import BatchTaskStore
from app.services.coordinator import BatchCoordinator
from app.services.recovery import RecoverySupervisor
from app.services.subtask_processor import SubtaskProcessor


@dataclass
class BatchServices:
    store: BatchTaskStore
    processor: SubtaskProcessor
    coordinator: BatchCoordinator
    recovery: RecoverySupervisor


def build_batch_services(
    settings: Settings,
    redis_client: redis.Redis,
    session_factory,
    enqueue_drain: Optional[Callable[[str], None]] = None,
    self_call_transport: Optional[httpx.BaseTransport] = None,
    ai_transport: Optional[httpx.BaseTransport] = None,
    schedule: Callable = schedule_after,
    spawn: Callable = run_detached,
    sleep: Optional[Callable[[float], None]] = None,
) -> BatchServices:
    store = BatchTaskStore(
        redis_client,
        task_ttl=settings.task_expire_seconds,
        progress_ttl=settings.progress_expire_seconds,
        max_user_active_tasks=settings.max_user_active_tasks,
    )
    processor = SubtaskProcessor(
        store,
        session_factory,
        settings,
        ai_client=ChatCompletionClient.from_settings(settings, transport=ai_transport),
        spawn=spawn,
    )
    coordinator = BatchCoordinator(
        store,
        processor,
        settings,
        session_factory,
        transport=self_call_transport,
        schedule=schedule,
        enqueue_drain=enqueue_drain,
    )
    recovery_kwargs = {"sleep": sleep} if sleep is not None else {}
    recovery = RecoverySupervisor(store, coordinator, settings, **recovery_kwargs)
    return BatchServices(store, processor, coordinator, recovery)
