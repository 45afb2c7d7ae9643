"""Immutable run context.

WorkflowContext is a frozen dataclass holding everything a driver, workflow
or HTTP handler needs for a run: the configuration, the job store, the source
of freshly-authenticated Box clients, the notifier and the step executor. It
is built once per process and passed down explicitly.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Protocol

from box_migrator.core.config import MigratorConfig
from box_migrator.core.executor import StepExecutor
from box_migrator.core.retry import RetryPolicy
from box_migrator.services.box_client import BoxClientFactory
from box_migrator.services.notifications import build_notifier
from box_migrator.store.sqlite import SqliteJobStore

if TYPE_CHECKING:
    from box_migrator.services.box_client import BoxClient
    from box_migrator.services.notifications import Notifier
    from box_migrator.store.interface import JobStore


class ClientFactory(Protocol):
    def admin(self) -> BoxClient: ...

    def for_user(self, user_id: str) -> BoxClient: ...


@dataclass(frozen=True)
class WorkflowContext:
    """Immutable context for a run. Created once, shared everywhere."""

    config: MigratorConfig
    store: JobStore
    clients: ClientFactory
    notifier: Notifier
    executor: StepExecutor

    @property
    def managed_user_id(self) -> str:
        return self.config.box.managed_user_id

    @property
    def max_workers(self) -> int:
        return max(1, self.config.max_workers)


def build_context(
    config: MigratorConfig,
    store: Optional[JobStore] = None,
    clients: Optional[ClientFactory] = None,
    notifier: Optional[Notifier] = None,
    executor: Optional[StepExecutor] = None,
) -> WorkflowContext:
    """Assemble a context from configuration, filling in production defaults."""
    if store is None:
        store = SqliteJobStore(
            config.job_store.path, lease_seconds=config.job_store.lease_seconds
        )
    if clients is None:
        clients = BoxClientFactory(config)
    if notifier is None:
        notifier = build_notifier(config.notifications)
    if executor is None:
        executor = StepExecutor(RetryPolicy.from_config(config.retry))
    return WorkflowContext(
        config=config,
        store=store,
        clients=clients,
        notifier=notifier,
        executor=executor,
    )
