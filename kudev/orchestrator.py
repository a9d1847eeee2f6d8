"""Watch, rebuild and redeploy loop."""

import asyncio
import logging
import threading
import time
from typing import Callable, Optional

from .builder import Builder
from .config import DeploymentConfig
from .debounce import Debouncer
from .deployer import Deployer
from .errors import HashError, KudevError, WatchError
from .hashing import HashCalculator
from .models import (
    BuildOptions,
    DesiredWorkloadState,
    EventBatch,
    RebuildResult,
    RebuildStage,
)
from .registry import ImageLoader
from .tagger import tag_for_digest
from .watcher import FileWatcher

logger = logging.getLogger(__name__)

Reporter = Callable[[RebuildResult], None]


class Orchestrator:
    """
    Rebuilds and redeploys the project whenever its source digest changes.

    Rebuilds are single-flight: while one is running, any number of further
    batches collapse into exactly one follow-up rebuild. The in-flight flag,
    the queued flag and the last known digest share one lock.
    """

    def __init__(
        self,
        config: DeploymentConfig,
        builder: Builder,
        loader: ImageLoader,
        deployer: Deployer,
        watcher: Optional[FileWatcher] = None,
        debouncer: Optional[Debouncer] = None,
        calculator: Optional[HashCalculator] = None,
        reporter: Optional[Reporter] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            config: Project configuration
            builder: Image builder
            loader: Makes built images available to the cluster
            deployer: Applies the new image to the cluster
            watcher: File watcher (defaults to one using the project exclusions)
            debouncer: Event debouncer (defaults to a 500ms window)
            calculator: Source hash calculator for the project root
            reporter: Called with the result of every rebuild cycle
            logger: Logger to use (defaults to the module logger)
        """
        self.config = config
        self.builder = builder
        self.loader = loader
        self.deployer = deployer
        self.logger = logger or logging.getLogger(__name__)

        exclusions = config.spec.build_context_exclusions
        self.watcher = watcher or FileWatcher(exclusions, logger=self.logger)
        self.debouncer = debouncer or Debouncer(logger=self.logger)
        self.calculator = calculator or HashCalculator(
            config.project_root, exclusions, logger=self.logger
        )
        self.reporter = reporter

        self._lock = threading.Lock()
        self._in_flight = False
        self._queued = False
        self._last_digest = ""
        self._closed = False
        self._rebuild_task: Optional[asyncio.Task] = None

    @property
    def last_digest(self) -> str:
        """Digest of the most recent rebuild attempt (or the baseline)."""
        with self._lock:
            return self._last_digest

    @property
    def rebuilding(self) -> bool:
        """True while a rebuild task is running."""
        with self._lock:
            return self._in_flight

    async def establish_baseline(self) -> str:
        """
        Record the current source digest as the baseline.

        Raises:
            WatchError: If the digest cannot be computed
        """
        try:
            digest = await asyncio.to_thread(self.calculator.calculate)
        except HashError as e:
            raise WatchError("failed to calculate initial hash", cause=e) from e

        with self._lock:
            self._last_digest = digest
        return digest

    async def run(self) -> None:
        """
        Watch the project root and rebuild on changes.

        Returns once close() is called or the watcher stream ends. Cancelling
        the task running this coroutine stops the watcher and any in-flight
        rebuild before the cancellation propagates.

        Raises:
            WatchError: If the baseline digest cannot be computed or the
                watcher cannot start
        """
        baseline = await self.establish_baseline()
        if self._closed:
            return
        root = self.config.project_root
        self.logger.info(f"Starting watch mode in {root} (hash {baseline})")

        events = self.watcher.watch(root)
        batches = self.debouncer.debounce(events)
        try:
            async for batch in batches:
                self.handle_batch(batch)
        except asyncio.CancelledError:
            self._cancel_rebuild()
            raise
        finally:
            await batches.aclose()
            self.watcher.close()
            await self.drain()

        self.logger.info("Watch mode stopped")

    def handle_batch(self, batch: EventBatch) -> None:
        """
        Start a rebuild for a batch of changes, or queue one if busy.

        Must be called from the event loop.
        """
        for event in batch:
            self.logger.debug(f"File changed: {event.path} ({event.operation.value})")

        with self._lock:
            if self._closed:
                return
            if self._in_flight:
                self._queued = True
                self.logger.debug("Rebuild already in progress, queueing")
                return
            self._in_flight = True

        self._rebuild_task = asyncio.get_running_loop().create_task(self._rebuild_loop())

    async def _rebuild_loop(self) -> None:
        try:
            while True:
                result = await self.rebuild()
                self._report(result)

                with self._lock:
                    if not self._queued or self._closed:
                        return
                    self._queued = False
                self.logger.info("Changes arrived during rebuild, rebuilding again")
        finally:
            self._clear_flags()

    def _clear_flags(self) -> None:
        with self._lock:
            self._in_flight = False
            self._queued = False

    async def rebuild_now(self) -> Optional[RebuildResult]:
        """
        Run one rebuild cycle as the tracked rebuild task and report it.

        close() cancels the cycle like any other in-flight rebuild.

        Returns:
            RebuildResult, or None if the orchestrator was closed or a
            rebuild was already running
        """
        with self._lock:
            if self._closed or self._in_flight:
                return None
            self._in_flight = True

        task = asyncio.get_running_loop().create_task(self._tracked_rebuild())
        self._rebuild_task = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise

        if task.cancelled():
            return None
        result = task.result()
        self._report(result)
        return result

    async def _tracked_rebuild(self) -> RebuildResult:
        try:
            return await self.rebuild()
        finally:
            self._clear_flags()

    async def rebuild(self) -> RebuildResult:
        """
        Run one rebuild cycle.

        Any failure ends the cycle and is returned in the result; the
        baseline digest stays updated so the same content is not retried
        until the next change.

        Returns:
            RebuildResult
        """
        start = time.monotonic()
        stage = RebuildStage.HASH
        digest = ""

        try:
            digest = await asyncio.to_thread(self.calculator.calculate)

            with self._lock:
                unchanged = digest == self._last_digest
                self._last_digest = digest
            if unchanged:
                self.logger.info(f"No changes detected (hash {digest}), skipping rebuild")
                return RebuildResult(
                    digest=digest,
                    skipped=True,
                    stage=stage,
                    elapsed_seconds=time.monotonic() - start,
                )

            self.logger.info(f"Change detected (hash {digest}), rebuilding")

            stage = RebuildStage.TAG
            tag = tag_for_digest(digest)

            stage = RebuildStage.BUILD
            image = await self.builder.build(
                BuildOptions(
                    source_dir=str(self.config.project_root),
                    dockerfile_path=str(self.config.dockerfile),
                    image_name=self.config.image_name,
                    image_tag=tag,
                )
            )

            stage = RebuildStage.LOAD
            await self.loader.load(image.full_ref)

            stage = RebuildStage.DEPLOY
            desired = DesiredWorkloadState.from_config(self.config, image.full_ref, digest)
            status = await asyncio.to_thread(self.deployer.upsert, desired)

            elapsed = time.monotonic() - start
            self.logger.info(f"Rebuild complete in {elapsed:.1f}s: {status.summary()}")
            return RebuildResult(
                digest=digest,
                stage=RebuildStage.DONE,
                image_ref=image.full_ref,
                status=status,
                elapsed_seconds=elapsed,
            )
        except Exception as e:
            self.logger.error(
                f"Rebuild failed during {stage.value}: {e}",
                exc_info=not isinstance(e, KudevError),
            )
            return RebuildResult(
                digest=digest,
                stage=stage,
                error=str(e),
                elapsed_seconds=time.monotonic() - start,
            )

    def _report(self, result: RebuildResult) -> None:
        if self.reporter is None:
            return
        try:
            self.reporter(result)
        except Exception as e:
            self.logger.error(f"Error in rebuild reporter: {e}", exc_info=True)

    async def drain(self) -> None:
        """Wait until no rebuild is running, including a queued follow-up."""
        task = self._rebuild_task
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            # Only swallow the rebuild task's own cancellation
            if not task.cancelled():
                raise

    def _cancel_rebuild(self) -> None:
        task = self._rebuild_task
        if task is not None and not task.done():
            task.cancel()

    def close(self) -> None:
        """Stop watching and cancel any in-flight rebuild; run() then returns."""
        with self._lock:
            self._closed = True
        self.watcher.close()
        self._cancel_rebuild()
