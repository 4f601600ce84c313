"""Tests for the long-running loop runner."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from orchestrator.services.completion_watcher import CompletionWatcher
from orchestrator.services.document_consumer import DocumentEventConsumer
from orchestrator.workers.runner import build_components, main, run


class TestBuildComponents:
    """Tests for build_components."""

    def test_all_builds_consumer_and_watcher(self) -> None:
        """'all' runs both loops."""
        components = build_components("all")

        assert [type(c) for c in components] == [DocumentEventConsumer, CompletionWatcher]

    def test_consumer_from_start(self) -> None:
        """The from-start flag reaches the consumer."""
        (consumer,) = build_components("consumer", from_start=True)

        assert consumer.from_start is True

    def test_unknown_component(self) -> None:
        """Unknown names are rejected."""
        with pytest.raises(ValueError):
            build_components("scheduler")


class TestRun:
    """Tests for run."""

    @pytest.mark.asyncio
    async def test_starts_and_stops_components(self) -> None:
        """Components are started, then stopped once the stop event fires."""
        component = MagicMock()
        component.start = AsyncMock()
        component.stop = AsyncMock()
        stop_event = asyncio.Event()
        stop_event.set()

        await run([component], stop_event)

        component.start.assert_awaited_once()
        component.stop.assert_awaited_once()


class TestMain:
    """Tests for the command line entry point."""

    @patch("orchestrator.workers.runner.configure_logging")
    @patch("orchestrator.workers.runner.asyncio.run")
    @patch("orchestrator.workers.runner._main", new_callable=MagicMock)
    def test_parses_arguments(
        self,
        mock_main: MagicMock,
        mock_run: MagicMock,
        mock_configure: MagicMock,
    ) -> None:
        """The component name and flag are passed to the async entry point."""
        main(["consumer", "--from-start"])

        mock_configure.assert_called_once()
        mock_main.assert_called_once_with("consumer", True)
        mock_run.assert_called_once_with(mock_main.return_value)

    def test_rejects_unknown_component(self) -> None:
        """argparse exits on an unknown component."""
        with pytest.raises(SystemExit):
            main(["scheduler"])
