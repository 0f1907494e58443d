from __future__ import annotations

import asyncio
import contextlib
from pathlib import Path

import pytest

import notify_relay_server as nr


class RecordingSink(nr.NotificationSink):
    """In-memory sink that remembers every notification it was handed."""

    def __init__(
        self,
        name: str = "recorder",
        available: bool = True,
        result: bool = True,
        supports_url: bool = True,
        supports_timeout: bool = True,
        supports_sound: bool = False,
        upgrade_hint: str = "",
    ):
        self.name = name
        self._available = available
        self._result = result
        self.supports_url = supports_url
        self.supports_timeout = supports_timeout
        self.supports_sound = supports_sound
        self.upgrade_hint = upgrade_hint
        self.sent: list[tuple[nr.NotificationRequest, bool]] = []

    def available(self) -> bool:
        return self._available

    async def send(self, note: nr.NotificationRequest, sound: bool = False) -> bool:
        self.sent.append((note, sound))
        return self._result


class ExplodingSink(RecordingSink):
    async def send(self, note: nr.NotificationRequest, sound: bool = False) -> bool:
        self.sent.append((note, sound))
        raise RuntimeError("notifier crashed")


def _make_relay(
    policy: nr.RelayPolicy | None = None,
    sinks: list[nr.NotificationSink] | None = None,
    max_connections: int = 1,
) -> nr.NotificationRelay:
    policy = policy or nr.RelayPolicy()
    sinks = sinks if sinks is not None else [RecordingSink()]
    return nr.NotificationRelay(
        policy,
        dispatcher=nr.NotificationDispatcher(sinks, policy),
        port=0,
        max_connections=max_connections,
    )


@contextlib.asynccontextmanager
async def _running(relay: nr.NotificationRelay):
    await relay.start()
    try:
        yield relay.port
    finally:
        await relay.stop()


async def _send_line(port: int, data: bytes) -> str:
    reader, writer = await asyncio.open_connection(nr.RELAY_HOST, port)
    writer.write(data)
    await writer.drain()
    line = await asyncio.wait_for(reader.readline(), timeout=5)
    writer.close()
    await writer.wait_closed()
    return line.decode()


@pytest.fixture
def policy_file(tmp_path: Path):
    """Write a policy document and return its path."""
    path = tmp_path / "notification_config.yml"

    def _write(text: str) -> str:
        path.write_text(text)
        return str(path)

    return _write


@pytest.fixture
def fake_tools(monkeypatch: pytest.MonkeyPatch):
    """Stand-in for the external notifier binaries.

    ``installed`` controls what ``shutil.which`` finds, ``calls`` records every
    command passed to ``_run`` and ``exit_codes`` maps a binary to its exit code.
    """
    state: dict = {"installed": set(), "calls": [], "exit_codes": {}}

    def fake_which(name, *args, **kwargs):
        return f"/usr/local/bin/{name}" if name in state["installed"] else None

    async def fake_run(cmd, timeout=30.0):
        state["calls"].append(list(cmd))
        code = state["exit_codes"].get(cmd[0], 0)
        return code, "", "boom" if code else ""

    monkeypatch.setattr(nr.shutil, "which", fake_which)
    monkeypatch.setattr(nr, "_run", fake_run)
    return state


@pytest.fixture(autouse=True)
def _clean_relay_env(monkeypatch: pytest.MonkeyPatch):
    for name in ("NOTIFY_RELAY_PORT", "NOTIFY_RELAY_HOST", "NOTIFY_RELAY_CONFIG"):
        monkeypatch.delenv(name, raising=False)
