from __future__ import annotations

import asyncio

from checksync.errors import FileIOError
from checksync.logger import BoundLogger, get_logger
from checksync.metrics import Metrics
from checksync.schemas.checks import CheckDocument, CheckEntry
from checksync.services.committer import CommitResult, ConfigCommitter
from checksync.services.documents import build_document
from checksync.services.families import CheckFamily, project_name
from checksync.services.registry import RegistrySnapshot, Subscription
from checksync.services.reload import ReloadTrigger

_logger = get_logger("services.reconciler")


async def render_family(
    family: CheckFamily,
    snapshot: RegistrySnapshot,
    *,
    logger: BoundLogger = _logger,
) -> CheckDocument:
    """Filter a snapshot down to one family and build its sorted document."""
    entries: list[CheckEntry] = []
    for record in snapshot.values():
        project = project_name(record.name, family.suffix)
        if project is None:
            logger.debug("reconcile.skip", f"Service does not match '{family.suffix}' suffix", service=record.name)
            continue
        entry = await family.build_entry(record, project)
        if entry is None:
            continue
        logger.debug("reconcile.match", "Service matched", service=record.name, project=project)
        entries.append(entry)
    return build_document(entries)


class Reconciler:
    """Keeps one family's generated check file in step with the registry.

    Passes run one at a time; a snapshot published while a pass is running is
    picked up by the next pass (only the latest one).
    """

    def __init__(
        self,
        family: CheckFamily,
        committer: ConfigCommitter,
        reload_trigger: ReloadTrigger,
        metrics: Metrics,
    ) -> None:
        self.family = family
        self.committer = committer
        self._reload = reload_trigger
        self._metrics = metrics
        self._logger = _logger.bind(family=family.name)

    async def render(self, snapshot: RegistrySnapshot) -> CheckDocument:
        return await render_family(self.family, snapshot, logger=self._logger)

    async def reconcile(self, snapshot: RegistrySnapshot) -> CommitResult:
        async with self._logger.operation(
            "reconcile.pass",
            "Reconciling check config",
            path=str(self.committer.path),
            services=len(snapshot),
        ) as op:
            document = await self.render(snapshot)
            instance_count = len(document.instances)
            self._metrics.set_instances(self.family.name, instance_count)
            op.step("document.build", "Built check document", instances=instance_count)
            pruned = self.family.prune()
            if pruned:
                op.step_debug("cache.prune", "Dropped expired remote configs", removed=pruned)

            try:
                result = await asyncio.to_thread(self.committer.commit, document)
            except FileIOError:
                self._metrics.record_commit(family=self.family.name, result="error")
                raise
            self._metrics.record_commit(family=self.family.name, result=result.value)
            op.step("file.commit", "Commit finished", result=result.value, digest=self.committer.digest)

            if result is CommitResult.COMMITTED:
                await asyncio.to_thread(self._reload.trigger)
                op.step("agent.reload", "Reload requested")
            return result

    async def run(self, subscription: Subscription, stop: asyncio.Event) -> None:
        self._logger.info("reconciler.start", "Watching registry", path=str(self.committer.path))
        while True:
            snapshot = await subscription.wait(stop)
            if snapshot is None:
                break
            try:
                await self.reconcile(snapshot)
            except FileIOError as exc:
                self._metrics.record_runtime_loop(loop=f"reconcile:{self.family.name}", ok=False)
                self._logger.error(
                    "reconcile.io_error",
                    "Commit failed, will retry on next change",
                    path=exc.path,
                    action=exc.action,
                    error=str(exc),
                )
                continue
            self._metrics.record_runtime_loop(loop=f"reconcile:{self.family.name}", ok=True)
        self._logger.warning("reconciler.stop", "Stopping reconciler")
