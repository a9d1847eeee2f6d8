"""Tests for Orchestrator."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from kudev.cli import _watch
from kudev.debounce import Debouncer
from kudev.errors import HashError, ImageLoadError, WatchError
from kudev.models import (
    FileChangeEvent,
    FileOperation,
    ImageRef,
    ObservedStatus,
    RebuildStage,
    StatusCode,
)
from kudev.orchestrator import Orchestrator


class FakeWatcher:
    """Watcher yielding a fixed list of events, optionally held open until close()."""

    def __init__(self, events=None, hold_open=False):
        self.events = events or []
        self.hold_open = hold_open
        self.closed = asyncio.Event()
        self.close_calls = 0

    def watch(self, root):
        async def _stream():
            for event in self.events:
                yield event
            if self.hold_open:
                await self.closed.wait()

        return _stream()

    def close(self):
        self.close_calls += 1
        self.closed.set()


class DigestSequence:
    """Calculator returning a new digest each time unless frozen."""

    def __init__(self):
        self.count = 0
        self.frozen = False

    def calculate(self):
        if not self.frozen:
            self.count += 1
        return f"{self.count:08x}"


def change(path="main.py"):
    return FileChangeEvent(path=path, operation=FileOperation.WRITE)


@pytest.fixture
def deployer():
    mock = MagicMock()
    mock.upsert.side_effect = lambda desired: ObservedStatus(
        deployment_name=desired.app_name,
        namespace=desired.namespace,
        ready_replicas=desired.replicas,
        desired_replicas=desired.replicas,
        status=StatusCode.RUNNING,
        image_digest=desired.image_digest,
    )
    return mock


@pytest.fixture
def builder():
    mock = MagicMock()
    mock.build = AsyncMock(
        side_effect=lambda options: ImageRef(
            full_ref=f"{options.image_name}:{options.image_tag}"
        )
    )
    return mock


@pytest.fixture
def loader():
    mock = MagicMock()
    mock.load = AsyncMock()
    return mock


def make_orchestrator(sample_config, builder, loader, deployer, **kwargs):
    kwargs.setdefault("watcher", FakeWatcher())
    kwargs.setdefault("calculator", DigestSequence())
    return Orchestrator(sample_config, builder, loader, deployer, **kwargs)


class TestRebuild:
    """Test cases for a single rebuild cycle."""

    @pytest.mark.asyncio
    async def test_rebuild_deploys_new_image(self, sample_config, builder, loader, deployer):
        """Test the full hash, build, load and deploy sequence."""
        orchestrator = make_orchestrator(sample_config, builder, loader, deployer)
        await orchestrator.establish_baseline()

        result = await orchestrator.rebuild()

        assert result.succeeded
        assert result.stage is RebuildStage.DONE
        assert result.digest == "00000002"
        assert result.image_ref == "myapp:kudev-00000002"

        options = builder.build.await_args.args[0]
        assert options.source_dir == str(sample_config.project_root)
        assert options.image_tag == "kudev-00000002"
        loader.load.assert_awaited_once_with("myapp:kudev-00000002")

        desired = deployer.upsert.call_args.args[0]
        assert desired.image_ref == "myapp:kudev-00000002"
        assert desired.image_digest == "00000002"
        assert desired.namespace == "dev"
        assert result.status.image_digest == "00000002"
        assert orchestrator.last_digest == "00000002"

    @pytest.mark.asyncio
    async def test_unchanged_digest_is_skipped(self, sample_config, builder, loader, deployer):
        """Test that a batch with no content change does not rebuild."""
        calculator = DigestSequence()
        calculator.frozen = True
        orchestrator = make_orchestrator(
            sample_config, builder, loader, deployer, calculator=calculator
        )
        await orchestrator.establish_baseline()

        result = await orchestrator.rebuild()

        assert result.skipped
        assert result.succeeded
        builder.build.assert_not_awaited()
        deployer.upsert.assert_not_called()

    @pytest.mark.asyncio
    async def test_failure_reports_stage(self, sample_config, builder, loader, deployer):
        """Test that a failed load stops the cycle and names the stage."""
        loader.load.side_effect = ImageLoadError("kind CLI not found")
        calculator = DigestSequence()
        orchestrator = make_orchestrator(
            sample_config, builder, loader, deployer, calculator=calculator
        )
        await orchestrator.establish_baseline()

        result = await orchestrator.rebuild()

        assert not result.succeeded
        assert result.stage is RebuildStage.LOAD
        assert "kind CLI not found" in result.error
        deployer.upsert.assert_not_called()

        # Same content is not retried until it changes again
        calculator.frozen = True
        assert orchestrator.last_digest == "00000002"
        assert (await orchestrator.rebuild()).skipped

    @pytest.mark.asyncio
    async def test_hash_failure_reports_hash_stage(self, sample_config, builder, loader, deployer):
        """Test that an unreadable tree fails at the hash stage."""
        calculator = MagicMock()
        calculator.calculate.side_effect = HashError("permission denied")
        orchestrator = make_orchestrator(
            sample_config, builder, loader, deployer, calculator=calculator
        )

        result = await orchestrator.rebuild()

        assert result.stage is RebuildStage.HASH
        assert result.error == "permission denied"


class TestSingleFlight:
    """Test cases for rebuild coalescing."""

    @pytest.mark.asyncio
    async def test_batches_during_rebuild_collapse(self, sample_config, loader, deployer):
        """Test that many batches during a build produce exactly one follow-up."""
        release = asyncio.Event()
        started = asyncio.Event()

        async def slow_build(options):
            started.set()
            await release.wait()
            return ImageRef(full_ref=f"{options.image_name}:{options.image_tag}")

        builder = MagicMock()
        builder.build = AsyncMock(side_effect=slow_build)
        results = []
        orchestrator = make_orchestrator(
            sample_config, builder, loader, deployer, reporter=results.append
        )
        await orchestrator.establish_baseline()

        orchestrator.handle_batch([change()])
        await asyncio.wait_for(started.wait(), timeout=5)
        for _ in range(5):
            orchestrator.handle_batch([change()])

        assert orchestrator.rebuilding
        release.set()
        await asyncio.wait_for(orchestrator.drain(), timeout=5)

        assert builder.build.await_count == 2
        assert len(results) == 2
        assert all(result.succeeded for result in results)
        assert not orchestrator.rebuilding

    @pytest.mark.asyncio
    async def test_reporter_errors_are_contained(self, sample_config, builder, loader, deployer):
        """Test that a failing reporter does not stop the rebuild loop."""
        reporter = MagicMock(side_effect=RuntimeError("display gone"))
        orchestrator = make_orchestrator(
            sample_config, builder, loader, deployer, reporter=reporter
        )
        await orchestrator.establish_baseline()

        orchestrator.handle_batch([change()])
        await asyncio.wait_for(orchestrator.drain(), timeout=5)

        reporter.assert_called_once()
        assert not orchestrator.rebuilding

    @pytest.mark.asyncio
    async def test_batches_after_close_are_ignored(self, sample_config, builder, loader, deployer):
        """Test that nothing starts once the orchestrator is closed."""
        orchestrator = make_orchestrator(sample_config, builder, loader, deployer)
        orchestrator.close()

        orchestrator.handle_batch([change()])
        await orchestrator.drain()

        builder.build.assert_not_awaited()


class TestRun:
    """Test cases for the watch loop."""

    @pytest.mark.asyncio
    async def test_run_rebuilds_for_watched_changes(
        self, sample_config, builder, loader, deployer
    ):
        """Test that a burst of events becomes one rebuild."""
        watcher = FakeWatcher([change("main.py"), change("pkg/util.py")])
        results = []
        orchestrator = make_orchestrator(
            sample_config,
            builder,
            loader,
            deployer,
            watcher=watcher,
            debouncer=Debouncer(window=0.01),
            reporter=results.append,
        )

        await asyncio.wait_for(orchestrator.run(), timeout=5)

        assert builder.build.await_count == 1
        assert [result.stage for result in results] == [RebuildStage.DONE]
        assert watcher.close_calls >= 1

    @pytest.mark.asyncio
    async def test_close_stops_run(self, sample_config, builder, loader, deployer):
        """Test that close() makes run() return."""
        watcher = FakeWatcher(hold_open=True)
        orchestrator = make_orchestrator(
            sample_config,
            builder,
            loader,
            deployer,
            watcher=watcher,
            debouncer=Debouncer(window=0.01),
        )

        task = asyncio.create_task(orchestrator.run())
        await asyncio.sleep(0.1)
        orchestrator.close()

        assert await asyncio.wait_for(task, timeout=5) is None
        builder.build.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_propagates(self, sample_config, builder, loader, deployer):
        """Test that cancelling the run task stops the watcher."""
        watcher = FakeWatcher(hold_open=True)
        orchestrator = make_orchestrator(
            sample_config, builder, loader, deployer, watcher=watcher
        )

        task = asyncio.create_task(orchestrator.run())
        await asyncio.sleep(0.1)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert watcher.close_calls >= 1

    @pytest.mark.asyncio
    async def test_baseline_failure(self, sample_config, builder, loader, deployer):
        """Test that an unreadable tree stops watch mode before it starts."""
        calculator = MagicMock()
        calculator.calculate.side_effect = HashError("no files")
        orchestrator = make_orchestrator(
            sample_config, builder, loader, deployer, calculator=calculator
        )

        with pytest.raises(WatchError) as exc_info:
            await orchestrator.run()

        assert "initial hash" in str(exc_info.value)


class TestRebuildNow:
    """Test cases for the tracked startup rebuild."""

    @pytest.mark.asyncio
    async def test_reports_result(self, sample_config, builder, loader, deployer):
        """Test that the startup cycle is reported like any other."""
        results = []
        orchestrator = make_orchestrator(
            sample_config, builder, loader, deployer, reporter=results.append
        )

        result = await orchestrator.rebuild_now()

        assert result.succeeded
        assert results == [result]
        assert not orchestrator.rebuilding

    @pytest.mark.asyncio
    async def test_close_cancels_startup_build(self, sample_config, loader, deployer):
        """Test that close() interrupts a slow first build."""
        started = asyncio.Event()
        cancelled = asyncio.Event()

        async def stuck_build(options):
            started.set()
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                cancelled.set()
                raise

        builder = MagicMock()
        builder.build = AsyncMock(side_effect=stuck_build)
        orchestrator = make_orchestrator(sample_config, builder, loader, deployer)

        task = asyncio.create_task(orchestrator.rebuild_now())
        await asyncio.wait_for(started.wait(), timeout=5)
        orchestrator.close()

        assert await asyncio.wait_for(task, timeout=2) is None
        assert cancelled.is_set()
        assert not orchestrator.rebuilding
        deployer.upsert.assert_not_called()

    @pytest.mark.asyncio
    async def test_watch_command_stops_during_startup_build(
        self, sample_config, loader, deployer
    ):
        """Test that the watch loop exits when closed before the first deploy."""
        started = asyncio.Event()

        async def stuck_build(options):
            started.set()
            await asyncio.Event().wait()

        builder = MagicMock()
        builder.build = AsyncMock(side_effect=stuck_build)
        watcher = FakeWatcher(hold_open=True)
        orchestrator = make_orchestrator(
            sample_config, builder, loader, deployer, watcher=watcher
        )

        task = asyncio.create_task(_watch(orchestrator))
        await asyncio.wait_for(started.wait(), timeout=5)
        orchestrator.close()

        await asyncio.wait_for(task, timeout=2)
        assert watcher.close_calls >= 1

    @pytest.mark.asyncio
    async def test_busy_returns_none(self, sample_config, builder, loader, deployer):
        """Test that a second cycle is not started while one is in flight."""
        orchestrator = make_orchestrator(sample_config, builder, loader, deployer)
        orchestrator.handle_batch([change()])

        assert await orchestrator.rebuild_now() is None
        await orchestrator.drain()


class TestMalformedDeployResult:
    """Test cases for unexpected deployer output."""

    @pytest.mark.asyncio
    async def test_bad_status_fails_the_cycle(self, sample_config, builder, loader, deployer):
        """Test that a deployer returning no status ends the cycle at deploy."""
        deployer.upsert.side_effect = None
        deployer.upsert.return_value = None
        orchestrator = make_orchestrator(sample_config, builder, loader, deployer)
        await orchestrator.establish_baseline()

        result = await orchestrator.rebuild()

        assert result.stage is RebuildStage.DEPLOY
        assert result.error is not None

    @pytest.mark.asyncio
    async def test_flags_cleared_when_reporting_fails(
        self, sample_config, builder, loader, deployer
    ):
        """Test that an escaping error still releases the single-flight slot."""
        orchestrator = make_orchestrator(sample_config, builder, loader, deployer)
        await orchestrator.establish_baseline()

        with patch.object(orchestrator, "_report", side_effect=RuntimeError("boom")):
            orchestrator.handle_batch([change()])
            with pytest.raises(RuntimeError):
                await orchestrator.drain()

        assert not orchestrator.rebuilding
