"""Tests for command execution and the host executor."""

from __future__ import annotations

import sys
from unittest.mock import AsyncMock, patch

import pytest

from ephemera.core.process import run_command
from ephemera.errors import CommandError
from ephemera.instances.executor import (
    CREATE_INSTANCE_COMMAND,
    DESTROY_IMAGE_COMMAND,
    DESTROY_INSTANCE_COMMAND,
    OSExecutor,
)


class TestRunCommand:
    """Tests for run_command."""

    @pytest.mark.asyncio
    async def test_returns_stdout(self):
        """Test stdout of a successful command is returned."""
        out = await run_command(sys.executable, "-c", "print('hello')", message="echo")
        assert out.strip() == "hello"

    @pytest.mark.asyncio
    async def test_failure_raises(self):
        """Test a non-zero exit raises CommandError with stderr."""
        with pytest.raises(CommandError) as exc_info:
            await run_command(
                sys.executable,
                "-c",
                "import sys; sys.stderr.write('boom'); sys.exit(3)",
                message="fail",
            )
        assert exc_info.value.returncode == 3
        assert "boom" in exc_info.value.stderr

    @pytest.mark.asyncio
    async def test_timeout_kills_command(self):
        """Test a command exceeding its timeout is killed."""
        with pytest.raises(CommandError, match="timed out"):
            await run_command(
                sys.executable, "-c", "import time; time.sleep(10)", message="slow", timeout=0.2
            )


class TestOSExecutor:
    """Tests for OSExecutor."""

    @pytest.mark.asyncio
    async def test_create_instance_command(self, tmp_path):
        """Test instance creation runs the helper through sudo."""
        with patch("ephemera.instances.executor.run_command", new=AsyncMock(return_value="")) as run:
            await OSExecutor(tmp_path).create_instance(3, 17, 6500)

        args = run.call_args.args
        assert args == ("sudo", CREATE_INSTANCE_COMMAND, str(tmp_path), "3", "17", "6500")

    @pytest.mark.asyncio
    async def test_destroy_instance_without_sudo(self, tmp_path):
        """Test sudo can be turned off."""
        with patch("ephemera.instances.executor.run_command", new=AsyncMock(return_value="")) as run:
            await OSExecutor(tmp_path, use_sudo=False).destroy_instance(17)

        assert run.call_args.args == (DESTROY_INSTANCE_COMMAND, str(tmp_path), "17")

    @pytest.mark.asyncio
    async def test_destroy_image_command(self, tmp_path):
        """Test image teardown runs its helper with the image id."""
        with patch("ephemera.instances.executor.run_command", new=AsyncMock(return_value="")) as run:
            await OSExecutor(tmp_path).destroy_image(3)

        assert run.call_args.args == ("sudo", DESTROY_IMAGE_COMMAND, str(tmp_path), "3")

    @pytest.mark.asyncio
    async def test_command_failure_propagates(self, tmp_path):
        """Test a failed helper surfaces as CommandError."""
        error = CommandError([CREATE_INSTANCE_COMMAND], 1, stderr="disk full")
        with (
            patch("ephemera.instances.executor.run_command", new=AsyncMock(side_effect=error)),
            pytest.raises(CommandError),
        ):
            await OSExecutor(tmp_path).create_instance(1, 1, 6000)

    @pytest.mark.asyncio
    async def test_retrieve_credentials(self, tmp_path):
        """Test the TLS files of an instance are read back."""
        executor = OSExecutor(tmp_path)
        path = executor.instance_path(5)
        path.mkdir(parents=True)
        (path / "ca.crt").write_text("CA")
        (path / "client.crt").write_text("CERT")
        (path / "client.key").write_text("KEY")

        credentials = await executor.retrieve_instance_credentials(5)

        assert credentials.ca_certificate == "CA"
        assert credentials.client_certificate == "CERT"
        assert credentials.client_key == "KEY"

    @pytest.mark.asyncio
    async def test_missing_credentials(self, tmp_path):
        """Test missing TLS files raise OSError."""
        with pytest.raises(OSError):
            await OSExecutor(tmp_path).retrieve_instance_credentials(5)
