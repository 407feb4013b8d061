import asyncio
from typing import Dict, List, Optional

import pytest

from barman_exporter import (
    BackupStatusRegistry,
    CommandResult,
    ProgramConfig,
    ProgramLogger,
    ProgramSource,
)


class FakeBarmanClient:
    """Stands in for BarmanClient with canned listing and check results."""

    def __init__(
        self,
        listing: str = "",
        failing=(),
        list_success: bool = True,
        check_delay: float = 0
    ):
        self.listing = listing
        self.failing = set(failing)
        self.list_success = list_success
        self.check_delay = check_delay
        self.list_calls = 0
        self.checked: List[str] = []

    def build_command(self, *args: str) -> List[str]:
        return ["sudo", "--user=barman", "barman", *args]

    async def list_servers(self) -> CommandResult:
        self.list_calls += 1
        if self.list_success:
            return CommandResult(output=self.listing, success=True, returncode=0)
        return CommandResult(
            output="ERROR: cannot read configuration\n",
            success=False,
            returncode=1,
            error_message="exit status 1"
        )

    async def check(self, target: str) -> CommandResult:
        self.checked.append(target)
        if self.check_delay:
            await asyncio.sleep(self.check_delay)
        if target in self.failing:
            return CommandResult(
                output=f"Server {target}:\n\tPostgreSQL: FAILED\n",
                success=False,
                returncode=1,
                error_message="exit status 1"
            )
        return CommandResult(output=f"Server {target}:\n\tPostgreSQL: OK\n", success=True, returncode=0)


class RecordingRegistry(BackupStatusRegistry):
    """Registry that records set/reset calls in order."""

    def __init__(self):
        super().__init__()
        self.calls: List[tuple] = []

    def set(self, label: str, value: float) -> None:
        self.calls.append(("set", label, value))
        super().set(label, value)

    def reset(self) -> None:
        self.calls.append(("reset",))
        super().reset()


@pytest.fixture
def config_dir(tmp_path):
    directory = tmp_path / "barman.d"
    directory.mkdir()
    return directory


@pytest.fixture
def make_config(tmp_path, config_dir):
    def factory(environ: Optional[Dict[str, str]] = None, **kwargs) -> ProgramConfig:
        env = {"BARMAN_CONFIG_DIR": str(config_dir)}
        env.update(environ or {})
        config = ProgramConfig(
            ProgramSource(script_path=tmp_path / "barman_exporter.py"),
            environ=env,
            **kwargs
        )
        config.load()
        return config
    return factory


@pytest.fixture
def config(make_config):
    return make_config()


@pytest.fixture
def logger(config):
    program_logger = ProgramLogger(config)
    yield program_logger.logger
    program_logger.close()


@pytest.fixture
def fake_client_class():
    return FakeBarmanClient


@pytest.fixture
def registry():
    return RecordingRegistry()
