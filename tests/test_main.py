"""Tests for logging setup and the operator entry point."""

import json
import logging
import os
import sys
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from eks_controller.config import Config
from eks_controller.main import JsonFormatter, main


class TestJsonFormatter:
    """Tests for JsonFormatter."""

    def test_includes_extra_fields(self) -> None:
        record = logging.LogRecord(
            "eks_controller.reconciler", logging.INFO, __file__, 1, "Executing %s", ("x",), None
        )
        record.cluster = "dev-cluster"
        record.procedures = ["associate_identity_provider"]

        data = json.loads(JsonFormatter().format(record))

        assert data["message"] == "Executing x"
        assert data["level"] == "INFO"
        assert data["logger"] == "eks_controller.reconciler"
        assert data["cluster"] == "dev-cluster"
        assert data["procedures"] == ["associate_identity_provider"]
        assert "msg" not in data
        assert data["timestamp"].endswith("Z")

    def test_includes_exception(self) -> None:
        try:
            raise ValueError("boom")
        except ValueError:
            record = logging.LogRecord(
                "test", logging.ERROR, __file__, 1, "failed", (), sys.exc_info()
            )

        data = json.loads(JsonFormatter().format(record))

        assert "ValueError: boom" in data["exception"]


class TestMain:
    """Tests for the async main entry point."""

    @pytest.mark.asyncio
    async def test_configuration_error_exits_1(self) -> None:
        with patch.dict(os.environ, {"AWS_REGION": ""}, clear=True):
            with patch("eks_controller.main.setup_logging"):
                assert await main() == 1

    @pytest.mark.asyncio
    async def test_uses_given_config(self, tmp_path: Path) -> None:
        """Test that an explicit config is used instead of the environment."""
        config = Config(region="eu-west-1", specs_dir=tmp_path)

        with patch.dict(os.environ, {}, clear=True), patch(
            "eks_controller.main.setup_logging"
        ), patch("eks_controller.main.Reconciler") as reconciler_class:
            reconciler_class.return_value.run = AsyncMock()
            assert await main(config) == 0

        reconciler_class.assert_called_once_with(config)
