#!/usr/bin/env python3
"""Host-side notification relay for sandboxed guests.

A guest VM or container has no access to the host's desktop notifications.
It connects to this relay over loopback TCP, sends one
``NOTIFY|title|message|url|timeout|type`` line and gets back ``OK``,
``FILTERED`` or an ``ERROR:`` line. Allowed notifications are shown with the
host's native notifier (terminal-notifier or osascript on macOS, notify-send
on Linux) or printed to stdout when nothing better exists.

The same module carries the guest side: ``send_notification`` speaks the
protocol, and ``notify-relay mcp`` exposes it to an agent as an MCP tool.
"""

import argparse
import asyncio
import errno
import logging
import os
import shutil
import signal
import sys
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Mapping, Optional, Sequence

import yaml
from mcp.server.fastmcp import FastMCP

# ── Logging (stderr only; stdout carries the stdout sink or MCP protocol) ──

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(message)s",
    stream=sys.stderr,
)
log = logging.getLogger("notify-relay")

# ── Config ───────────────────────────────────────────────────────────────

# Published port; guest provisioning forwards to it, so never pick another.
DEFAULT_PORT = 29325
RELAY_HOST = "127.0.0.1"

RELAY_READ_TIMEOUT = 30.0
RELAY_MAX_LINE = 8192
# 1 keeps handling strictly sequential, in accept order
RELAY_MAX_CONNECTIONS = 1

# Upper bound on a single external notifier invocation
NOTIFY_TOOL_TIMEOUT = 10.0

# How long the guest-side client waits for connect and reply
CLIENT_TIMEOUT = 10.0

CONFIG_FILE = os.path.expanduser("~/.vagrant-claude-sandbox/notification_config.yml")


def _env_port(name: str = "NOTIFY_RELAY_PORT", default: int = DEFAULT_PORT) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        port = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if not 0 <= port <= 65535:
        raise ValueError(f"{name} out of range: {port}")
    return port


def _config_path() -> str:
    return os.environ.get("NOTIFY_RELAY_CONFIG", "").strip() or CONFIG_FILE


# ── Policy ───────────────────────────────────────────────────────────────

_DEFAULT_SHOW_TYPES = frozenset({"task_complete", "needs_input", "error", "warning"})

_DEFAULT_TYPE_TIMEOUTS = {
    "info": 10,
    "success": 15,
    "error": 0,
    "warning": 0,
    "needs_input": 0,
    "task_complete": 0,
    "task_start": 5,
}

_POLICY_KEYS = (
    "show_types",
    "default_timeout",
    "type_timeouts",
    "enable_sound",
    "require_url",
)


@dataclass(frozen=True)
class RelayPolicy:
    """Which notification types surface and for how long. 0 s = persistent."""

    show_types: frozenset = _DEFAULT_SHOW_TYPES
    default_timeout: int = 0
    type_timeouts: Mapping[str, int] = field(
        default_factory=lambda: MappingProxyType(dict(_DEFAULT_TYPE_TIMEOUTS))
    )
    enable_sound: bool = False
    require_url: bool = False


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def merge_policy(
    overrides: Mapping, base: Optional[RelayPolicy] = None
) -> RelayPolicy:
    """Overlay user keys on ``base`` (defaults when omitted).

    Absent keys keep the base value, unknown keys are ignored, and
    ``type_timeouts`` merges per type instead of replacing the whole table.
    Raises ValueError when a known key carries a value of the wrong type.
    """
    base = base or RelayPolicy()
    changes: dict = {}
    for key, value in overrides.items():
        if key not in _POLICY_KEYS:
            log.debug(f"Ignoring unknown policy key: {key!r}")
            continue
        if key == "show_types":
            if not isinstance(value, (list, tuple, set, frozenset)) or not all(
                isinstance(t, str) for t in value
            ):
                raise ValueError("show_types must be a list of strings")
            changes[key] = frozenset(t.strip() for t in value)
        elif key == "default_timeout":
            if not _is_int(value):
                raise ValueError("default_timeout must be an integer")
            changes[key] = value
        elif key == "type_timeouts":
            if not isinstance(value, Mapping):
                raise ValueError("type_timeouts must be a mapping of type to seconds")
            merged = dict(base.type_timeouts)
            for kind, seconds in value.items():
                if not isinstance(kind, str) or not _is_int(seconds):
                    raise ValueError(f"type_timeouts[{kind!r}] must be an integer")
                merged[kind] = seconds
            changes[key] = MappingProxyType(merged)
        else:
            if not isinstance(value, bool):
                raise ValueError(f"{key} must be true or false")
            changes[key] = value
    return replace(base, **changes)


def load_policy(path: Optional[str] = None) -> RelayPolicy:
    """Load the user policy file onto the defaults. Never raises."""
    path = path or _config_path()
    try:
        with open(path) as f:
            loaded = yaml.safe_load(f)
    except FileNotFoundError:
        log.info(f"No policy file at {path}, using defaults")
        return RelayPolicy()
    except (OSError, ValueError, yaml.YAMLError) as e:
        log.warning(f"Failed to load policy from {path}: {e}; using defaults")
        return RelayPolicy()

    if loaded is None:
        return RelayPolicy()
    if not isinstance(loaded, dict):
        log.warning(
            f"Failed to load policy from {path}: top level must be a mapping; "
            "using defaults"
        )
        return RelayPolicy()
    try:
        return merge_policy(loaded)
    except ValueError as e:
        log.warning(f"Failed to load policy from {path}: {e}; using defaults")
        return RelayPolicy()


# ── Protocol ─────────────────────────────────────────────────────────────

RESPONSE_OK = "OK"
RESPONSE_FILTERED = "FILTERED"
RESPONSE_INVALID = "ERROR: Invalid format. Use: NOTIFY|title|message|url|timeout|type"

_PLACEHOLDER_TITLE = "Notification"
_DEFAULT_TYPE = "info"


@dataclass(frozen=True)
class NotificationRequest:
    title: str
    message: str
    url: Optional[str] = None
    timeout: Optional[int] = None
    type: str = _DEFAULT_TYPE


def parse_request(line: str) -> Optional[NotificationRequest]:
    """Parse one request line; None means malformed. Never raises."""
    parts = line.strip().split("|", 5)
    if parts[0] != "NOTIFY" or len(parts) < 3:
        return None

    title, message = parts[1], parts[2]

    url = None
    if len(parts) >= 4 and parts[3].strip():
        url = parts[3].strip()

    timeout = None
    if len(parts) >= 5 and parts[4].strip():
        try:
            timeout = int(parts[4].strip())
        except ValueError:
            log.debug(f"Ignoring non-numeric timeout field: {parts[4]!r}")

    kind = parts[5].strip() if len(parts) >= 6 else ""

    # A lone payload field is the body, not the title
    if not message:
        title, message = _PLACEHOLDER_TITLE, title

    return NotificationRequest(
        title=title,
        message=message,
        url=url,
        timeout=timeout,
        type=kind or _DEFAULT_TYPE,
    )


def _clean_field(value) -> str:
    return str(value).replace("|", "/").replace("\r", " ").replace("\n", " ")


def encode_request(
    title: str,
    message: str,
    url: Optional[str] = None,
    timeout: Optional[int] = None,
    type: Optional[str] = None,
) -> str:
    fields = [
        "NOTIFY",
        _clean_field(title),
        _clean_field(message),
        _clean_field(url) if url else "",
        str(int(timeout)) if timeout is not None else "",
        _clean_field(type) if type else "",
    ]
    while len(fields) > 3 and not fields[-1]:
        fields.pop()
    return "|".join(fields) + "\n"


# ── Filter & timeout ─────────────────────────────────────────────────────


def should_show(kind: str, url: Optional[str], policy: RelayPolicy) -> bool:
    if kind not in policy.show_types:
        return False
    if policy.require_url and not url:
        return False
    return True


def effective_timeout(
    kind: str, explicit: Optional[int], policy: RelayPolicy
) -> int:
    """Explicit caller timeout wins; then the per-type entry; then the default."""
    if explicit is not None:
        return explicit
    if kind in policy.type_timeouts:
        return policy.type_timeouts[kind]
    return policy.default_timeout


# ── External tools ───────────────────────────────────────────────────────


async def _run(
    cmd: list[str], timeout: float = NOTIFY_TOOL_TIMEOUT
) -> tuple[int, str, str]:
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise
    return (
        proc.returncode or 0,
        stdout.decode(errors="replace"),
        stderr.decode(errors="replace"),
    )


# ── Notification sinks ───────────────────────────────────────────────────


class NotificationSink:
    """One host notification mechanism and what it can render."""

    name = "sink"
    binary: Optional[str] = None
    supports_url = False
    supports_timeout = False
    supports_sound = False
    upgrade_hint = ""

    def available(self) -> bool:
        return self.binary is None or shutil.which(self.binary) is not None

    def command(self, note: NotificationRequest, sound: bool = False) -> list[str]:
        raise NotImplementedError

    async def send(self, note: NotificationRequest, sound: bool = False) -> bool:
        cmd = self.command(note, sound=sound)
        try:
            code, _, stderr = await _run(cmd, timeout=NOTIFY_TOOL_TIMEOUT)
        except asyncio.TimeoutError:
            log.warning(f"{self.name} timed out after {NOTIFY_TOOL_TIMEOUT:.0f}s")
            return False
        except OSError as e:
            log.warning(f"{self.name} could not be started: {e}")
            return False
        if code != 0:
            log.warning(f"{self.name} exited with code {code}: {stderr.strip()[:200]}")
            return False
        return True


class TerminalNotifierSink(NotificationSink):
    """macOS terminal-notifier: clickable URL, timeout and sound."""

    name = "terminal-notifier"
    binary = "terminal-notifier"
    supports_url = True
    supports_timeout = True
    supports_sound = True

    def command(self, note: NotificationRequest, sound: bool = False) -> list[str]:
        args = [self.binary, "-title", note.title, "-message", note.message]
        if sound:
            args += ["-sound", "default"]
        if note.url:
            args += ["-open", note.url]
        # terminal-notifier keeps the banner until dismissed when -timeout is absent
        if note.timeout is not None and note.timeout > 0:
            args += ["-timeout", str(note.timeout)]
        return args


def _applescript_str(text: str) -> str:
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


class OsascriptSink(NotificationSink):
    """Baseline macOS notification through AppleScript. Title and body only."""

    name = "osascript"
    binary = "osascript"
    upgrade_hint = (
        "Install terminal-notifier for clickable notifications and timeout "
        "control: brew install terminal-notifier"
    )

    def command(self, note: NotificationRequest, sound: bool = False) -> list[str]:
        script = (
            f"display notification {_applescript_str(note.message)} "
            f"with title {_applescript_str(note.title)}"
        )
        return [self.binary, "-e", script]


class NotifySendSink(NotificationSink):
    """Linux notify-send. The URL goes into the body; timeout is in ms."""

    name = "notify-send"
    binary = "notify-send"
    supports_url = True
    supports_timeout = True

    def command(self, note: NotificationRequest, sound: bool = False) -> list[str]:
        body = note.message
        if note.url:
            body = f"{note.message}\n\n🔗 {note.url}"
        args = [self.binary]
        # No -t at all for 0: the server default would otherwise expire it
        if note.timeout is not None and note.timeout > 0:
            args += ["-t", str(note.timeout * 1000)]
        args += ["--", note.title, body]
        return args


class StdoutSink(NotificationSink):
    """Last resort: print the notification on the relay's own stdout."""

    name = "stdout"
    supports_url = True
    supports_timeout = True

    def __init__(self, stream=None):
        self._stream = stream

    def available(self) -> bool:
        return True

    async def send(self, note: NotificationRequest, sound: bool = False) -> bool:
        lines = [f"[{note.type}] {note.title}: {note.message}"]
        if note.url:
            lines.append(f"  URL: {note.url}")
        if note.timeout is not None:
            shown = "persistent" if note.timeout == 0 else f"{note.timeout}s"
            lines.append(f"  Timeout: {shown}")
        print("\n".join(lines), file=self._stream or sys.stdout, flush=True)
        return True


def default_sinks(platform: str = sys.platform) -> list[NotificationSink]:
    """Fallback chain for the host OS, best first."""
    if platform == "darwin":
        return [TerminalNotifierSink(), OsascriptSink(), StdoutSink()]
    if platform.startswith("linux"):
        return [NotifySendSink(), StdoutSink()]
    return [StdoutSink()]


class NotificationDispatcher:
    """Tries each sink in order until one displays the notification."""

    def __init__(self, sinks: Sequence[NotificationSink], policy: RelayPolicy):
        self.sinks = list(sinks)
        self.policy = policy

    async def dispatch(self, note: NotificationRequest) -> Optional[str]:
        """Show ``note`` (timeout already resolved); returns the sink used, if any."""
        for sink in self.sinks:
            try:
                if not sink.available():
                    log.debug(f"{sink.name} not available, trying next notifier")
                    continue
                sound = self.policy.enable_sound and sink.supports_sound
                shown = await sink.send(note, sound=sound)
            except Exception as e:
                log.warning(f"{sink.name} failed: {e}")
                continue
            if shown:
                self._hint_dropped_features(sink, note)
                return sink.name
        log.warning(f"No notifier could display {note.title!r}")
        return None

    @staticmethod
    def _hint_dropped_features(sink: NotificationSink, note: NotificationRequest):
        dropped_url = bool(note.url) and not sink.supports_url
        # 0 still needs the tool to hold the banner until dismissed
        dropped_timeout = note.timeout is not None and not sink.supports_timeout
        if (dropped_url or dropped_timeout) and sink.upgrade_hint:
            log.info(f"  ({sink.upgrade_hint})")


# ── Relay server ─────────────────────────────────────────────────────────


class RelayBindError(RuntimeError):
    """The relay could not open its listening socket."""


class NotificationRelay:
    """Loopback TCP server: one request line in, one status line out."""

    def __init__(
        self,
        policy: RelayPolicy,
        dispatcher: Optional[NotificationDispatcher] = None,
        host: str = RELAY_HOST,
        port: int = DEFAULT_PORT,
        max_connections: int = RELAY_MAX_CONNECTIONS,
    ):
        self.policy = policy
        self.dispatcher = dispatcher or NotificationDispatcher(default_sinks(), policy)
        self.host = host
        self.port = port
        self._sem = asyncio.Semaphore(max(1, max_connections))
        self._server: Optional[asyncio.AbstractServer] = None

    @property
    def listening(self) -> bool:
        return self._server is not None

    async def start(self) -> int:
        """Bind the listener and return the bound port. Raises RelayBindError."""
        if self._server is not None:
            return self.port
        try:
            self._server = await asyncio.start_server(
                self._handle_client,
                host=self.host,
                port=self.port,
                limit=RELAY_MAX_LINE,
            )
        except OSError as e:
            if e.errno == errno.EADDRINUSE:
                raise RelayBindError(
                    f"Port {self.port} is already in use. "
                    "Another notification relay may already be running."
                ) from e
            raise RelayBindError(
                f"Could not listen on {self.host}:{self.port}: {e}"
            ) from e
        self.port = self._server.sockets[0].getsockname()[1]
        log.info(f"Notification relay listening on {self.host}:{self.port}")
        return self.port

    async def stop(self):
        if self._server is None:
            return
        server, self._server = self._server, None
        server.close()
        await server.wait_closed()
        log.info("Notification relay stopped")

    async def serve_until(self, stop: asyncio.Event):
        await self.start()
        try:
            await stop.wait()
        finally:
            log.info("Shutting down notification relay...")
            await self.stop()

    async def handle_line(self, line: str) -> str:
        note = parse_request(line)
        if note is None:
            log.debug(f"Malformed request: {line.strip()[:200]!r}")
            return RESPONSE_INVALID

        if not should_show(note.type, note.url, self.policy):
            log.debug(f"Filtered [{note.type}] {note.title!r}")
            return RESPONSE_FILTERED

        timeout = effective_timeout(note.type, note.timeout, self.policy)
        used = await self.dispatcher.dispatch(replace(note, timeout=timeout))
        log.info(f"[{note.type}] {note.title!r} -> {used or 'not displayed'}")
        return RESPONSE_OK

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ):
        async with self._sem:
            try:
                try:
                    raw = await asyncio.wait_for(
                        reader.readline(), timeout=RELAY_READ_TIMEOUT
                    )
                except (asyncio.LimitOverrunError, ValueError):
                    await self._send(writer, RESPONSE_INVALID)
                    return

                if not raw:
                    return

                response = await self.handle_line(raw.decode(errors="replace"))
                await self._send(writer, response)

            except asyncio.TimeoutError:
                log.debug("Client sent no complete line before the read timeout")
                try:
                    await self._send(writer, RESPONSE_INVALID)
                except OSError:
                    pass
            except ConnectionError as e:
                log.debug(f"Client went away: {e}")
            except Exception:
                log.exception("Unexpected error while handling a relay client")
            finally:
                writer.close()
                try:
                    await writer.wait_closed()
                except OSError:
                    pass

    @staticmethod
    async def _send(writer: asyncio.StreamWriter, response: str):
        writer.write((response + "\n").encode())
        await writer.drain()


def _log_banner(relay: NotificationRelay):
    policy = relay.policy
    default = (
        "permanent" if policy.default_timeout == 0 else f"{policy.default_timeout}s"
    )
    log.info("Guests can now send notifications to this host.")
    log.info(f"  Show types: {', '.join(sorted(policy.show_types)) or '(none)'}")
    log.info(f"  Default timeout: {default}")
    log.info(f"  Require URL: {policy.require_url}")
    log.info(f"  Sound: {policy.enable_sound}")
    log.info(f"  Notifiers: {' -> '.join(s.name for s in relay.dispatcher.sinks)}")
    log.info("Press Ctrl+C to stop.")


async def _run_relay(relay: NotificationRelay):
    await relay.start()
    _log_banner(relay)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Windows, or not the main thread: KeyboardInterrupt still works
            pass
    await relay.serve_until(stop)


# ── Relay client (guest side) ────────────────────────────────────────────


class RelayUnavailableError(ConnectionError):
    """The relay could not be reached or did not answer."""


async def send_notification(
    title: str,
    message: str = "",
    url: Optional[str] = None,
    timeout: Optional[int] = None,
    type: Optional[str] = None,
    host: Optional[str] = None,
    port: Optional[int] = None,
    wait: float = CLIENT_TIMEOUT,
) -> str:
    """Send one notification to the relay and return its reply line."""
    host = host or os.environ.get("NOTIFY_RELAY_HOST", "").strip() or RELAY_HOST
    port = _env_port() if port is None else port
    line = encode_request(title, message, url=url, timeout=timeout, type=type)

    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=wait
        )
    except (OSError, asyncio.TimeoutError) as e:
        raise RelayUnavailableError(
            f"Cannot reach notification relay at {host}:{port}: {str(e) or 'timed out'}"
        ) from e

    try:
        writer.write(line.encode())
        await writer.drain()
        reply = await asyncio.wait_for(reader.readline(), timeout=wait)
    except (OSError, asyncio.TimeoutError) as e:
        raise RelayUnavailableError(
            f"Notification relay at {host}:{port} did not answer: {str(e) or 'timed out'}"
        ) from e
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass

    if not reply:
        raise RelayUnavailableError(
            f"Notification relay at {host}:{port} closed the connection without a reply"
        )
    return reply.decode(errors="replace").strip()


# ── MCP Server ───────────────────────────────────────────────────────────

mcp_server = FastMCP(
    "notify-relay",
    instructions=(
        "Use notify to show a desktop notification on the user's host machine. "
        "The sandbox cannot display notifications itself. "
        "Pick a type that matches the event: task_complete when a long task "
        "finishes, needs_input when you are blocked on the user, error or "
        "warning for problems. By default the host only shows task_complete, "
        "needs_input, error and warning; other types are filtered. "
        "Pass url to make the notification open a page when clicked."
    ),
)


@mcp_server.tool()
async def notify(
    title: str,
    message: str = "",
    url: str = "",
    timeout: Optional[int] = None,
    type: str = "task_complete",
) -> str:
    """
    Show a desktop notification on the host.

    Args:
        title: Short headline (e.g., "Build finished")
        message: Body text. If empty, title is used as the body.
        url: Optional link opened when the notification is clicked
        timeout: Seconds before auto-dismiss; 0 keeps it until dismissed.
            Omit to use the host's per-type setting.
        type: One of info, success, error, warning, needs_input,
            task_complete, task_start (default task_complete)

    Returns:
        Whether the host displayed or filtered the notification.
    """
    try:
        reply = await send_notification(
            title, message, url=url or None, timeout=timeout, type=type
        )
    except RelayUnavailableError as e:
        return f"Error: {e}"

    if reply == RESPONSE_OK:
        return "Notification sent to host"
    if reply == RESPONSE_FILTERED:
        return f"Notification filtered by host policy (type '{type}' is not shown)"
    return f"Error: relay rejected the request: {reply}"


# ── Entry point ──────────────────────────────────────────────────────────


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="notify-relay",
        description="Relay desktop notifications from a sandboxed guest to this host.",
    )
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Run the host-side relay (default)")
    serve.add_argument(
        "--port", type=int, default=None, help=f"Listen port (default {DEFAULT_PORT})"
    )
    serve.add_argument("--config", default=None, help="Policy file (YAML)")
    serve.add_argument(
        "--max-connections",
        type=int,
        default=RELAY_MAX_CONNECTIONS,
        help="Connections handled at once (default 1, sequential)",
    )

    send = sub.add_parser("send", help="Send one notification to a relay")
    send.add_argument("title")
    send.add_argument("message", nargs="?", default="")
    send.add_argument("--url", default=None)
    send.add_argument("--timeout", type=int, default=None)
    send.add_argument("--type", dest="kind", default=None)
    send.add_argument("--host", default=None)
    send.add_argument("--port", type=int, default=None)

    sub.add_parser("mcp", help="Run an MCP stdio server exposing the notify tool")
    return parser


def _serve(args: argparse.Namespace) -> int:
    try:
        port = _env_port() if args.port is None else args.port
    except ValueError as e:
        log.error(str(e))
        return 1

    policy = load_policy(args.config)
    relay = NotificationRelay(
        policy, port=port, max_connections=args.max_connections
    )
    try:
        asyncio.run(_run_relay(relay))
    except RelayBindError as e:
        log.error(str(e))
        return 1
    except KeyboardInterrupt:
        log.info("Shutting down notification relay...")
    return 0


def _send(args: argparse.Namespace) -> int:
    try:
        reply = asyncio.run(
            send_notification(
                args.title,
                args.message,
                url=args.url,
                timeout=args.timeout,
                type=args.kind,
                host=args.host,
                port=args.port,
            )
        )
    except (RelayUnavailableError, ValueError) as e:
        log.error(str(e))
        return 1
    print(reply)
    return 0 if reply in (RESPONSE_OK, RESPONSE_FILTERED) else 1


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        args = parser.parse_args(["serve"])

    if args.command == "send":
        return _send(args)
    if args.command == "mcp":
        mcp_server.run(transport="stdio")
        return 0
    return _serve(args)


if __name__ == "__main__":
    sys.exit(main())
