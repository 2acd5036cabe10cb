"""Tests for main daemon module."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from scribed.config import AppConfig
from scribed.main import main


@pytest.fixture
def mock_config():
    """Create a default config."""
    with patch("scribed.main.load_config") as mock_load:
        config = AppConfig.model_construct()
        mock_load.return_value = config
        yield mock_load


@pytest.fixture
def mock_handlers():
    """Create mock pipeline and server."""
    shutdown_event = asyncio.Event()

    with (
        patch("scribed.main.setup_logging") as mock_logging,
        patch("scribed.main.IPCServer") as mock_ipc,
        patch("scribed.main.PipelineManager") as mock_pipeline,
        patch("scribed.main.asyncio.Event", return_value=shutdown_event),
    ):
        ipc = AsyncMock()
        ipc._server = object()
        pipeline = AsyncMock()
        mock_ipc.return_value = ipc
        mock_pipeline.return_value = pipeline

        yield {
            "ipc": ipc,
            "pipeline": pipeline,
            "logging": mock_logging,
            "shutdown_event": shutdown_event,
        }


@pytest.mark.asyncio
async def test_main_startup_shutdown(mock_config, mock_handlers):
    """Test normal startup and shutdown flow."""
    main_task = asyncio.create_task(main())

    try:
        await asyncio.sleep(0.1)
        mock_handlers["shutdown_event"].set()

        exit_code = await asyncio.wait_for(main_task, timeout=1.0)

        assert exit_code == 0
        mock_handlers["logging"].assert_called_once()
        mock_handlers["pipeline"].start.assert_awaited_once()
        mock_handlers["ipc"].start.assert_awaited_once()
        mock_handlers["ipc"].stop.assert_awaited_once()
        mock_handlers["pipeline"].stop.assert_awaited_once()
    finally:
        if not main_task.done():
            main_task.cancel()


@pytest.mark.asyncio
async def test_main_config_error(mock_config, mock_handlers):
    mock_config.side_effect = ValueError("bad config")

    assert await main() == 1

    mock_handlers["pipeline"].start.assert_not_awaited()
    mock_handlers["logging"].assert_not_called()


@pytest.mark.asyncio
async def test_main_startup_error(mock_config, mock_handlers):
    """Test handling of startup error."""
    mock_handlers["ipc"].start.side_effect = RuntimeError("Test error")

    exit_code = await main()

    assert exit_code == 1
    mock_handlers["ipc"].stop.assert_awaited_once()
    mock_handlers["pipeline"].stop.assert_awaited_once()
