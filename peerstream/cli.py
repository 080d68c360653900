from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Optional, Sequence, TextIO

from .engine.config import LinkConfig
from .engine.dispatcher import LinkEngine
from .engine.errors import LinkError
from .engine.hooks import (
    ChunkAppendedEvent,
    ModelInfoEvent,
    NullHooks,
    StatusEvent,
    StreamEndedEvent,
    StreamErroredEvent,
)
from .engine.negotiation import NegotiationState
from .engine.transport import WebSocketPeerTransport
from .logging import configure_logging


class ConsoleHooks(NullHooks):
    """Prints a single generation and resolves futures the CLI waits on."""

    def __init__(
        self,
        engine_ref: "_EngineRef",
        *,
        show_reasoning: bool = False,
        out: Optional[TextIO] = None,
        err: Optional[TextIO] = None,
    ):
        self._ref = engine_ref
        self._show_reasoning = show_reasoning
        self._out = out or sys.stdout
        self._err = err or sys.stderr
        loop = asyncio.get_running_loop()
        self.negotiated: asyncio.Future[bool] = loop.create_future()
        self.finished: asyncio.Future[bool] = loop.create_future()
        self.request_id: Optional[str] = None

    def on_status(self, event: StatusEvent) -> None:
        self._err.write(f"[{'error' if event.is_error else 'status'}] {event.text}\n")
        snapshot = self._ref.engine.snapshot(event.peer_id) if self._ref.engine else None
        if snapshot is None:
            # Peer gone before we got an answer.
            _resolve(self.negotiated, False)
            _resolve(self.finished, False)
            return
        if snapshot.negotiation == NegotiationState.COMPATIBLE:
            _resolve(self.negotiated, True)
        elif snapshot.negotiation == NegotiationState.INCOMPATIBLE:
            _resolve(self.negotiated, False)

    def on_model_info(self, event: ModelInfoEvent) -> None:
        self._err.write(f"[model] {event.model.describe()} id={event.model.id}\n")

    def on_visible_token(self, event: ChunkAppendedEvent) -> None:
        self._out.write(event.chunk)
        self._out.flush()

    def on_reasoning_token(self, event: ChunkAppendedEvent) -> None:
        if self._show_reasoning:
            self._err.write(event.chunk)
            self._err.flush()

    def on_stream_ended(self, event: StreamEndedEvent) -> None:
        if self.request_id is None or event.request_id == self.request_id:
            self._out.write("\n")
            _resolve(self.finished, True)

    def on_stream_errored(self, event: StreamErroredEvent) -> None:
        if self.request_id is None or event.request_id in (None, self.request_id):
            _resolve(self.finished, False)


class _EngineRef:
    engine: Optional[LinkEngine] = None


def _resolve(future: asyncio.Future, value: bool) -> None:
    if not future.done():
        future.set_result(value)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="peerstream",
        description="Prompt a remote model host and stream its reply",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    connect = subparsers.add_parser("connect", help="Send one prompt and stream the completion")
    connect.add_argument("--url", type=str, default=None, help="WebSocket URL of the peer (or transport.url)")
    connect.add_argument("--config", type=str, default=None, help="Path to JSON or TOML config")
    connect.add_argument("--system", type=str, default=None, help="Optional system prompt")
    connect.add_argument("--max-tokens", type=str, default=None, help="Generation limit (omitted if not > 0)")
    connect.add_argument("--show-reasoning", action="store_true", help="Echo reasoning tokens to stderr")
    connect.add_argument("--timeout", type=float, default=60.0, help="Seconds to wait for each phase")
    connect.add_argument("prompt", help="User message")

    config = subparsers.add_parser("config", help="Configuration helpers")
    config_sub = config.add_subparsers(dest="config_command", required=True)
    show = config_sub.add_parser("show", help="Print the effective configuration as JSON")
    show.add_argument("--config", type=str, default=None, help="Path to JSON or TOML config")

    return parser


async def _run_connect(
    args: argparse.Namespace,
    config: LinkConfig,
    *,
    out: Optional[TextIO] = None,
    err: Optional[TextIO] = None,
) -> int:
    out = out or sys.stdout
    err = err or sys.stderr
    url = args.url or config.transport.url
    if not url:
        err.write("error: --url is required (or set transport.url)\n")
        return 2

    ref = _EngineRef()
    hooks = ConsoleHooks(ref, show_reasoning=args.show_reasoning, out=out, err=err)
    transport = WebSocketPeerTransport(url, config.transport)
    engine = LinkEngine(transport, config, hooks)
    ref.engine = engine
    transport.attach(engine)

    if not await transport.connect():
        err.write(f"error: could not connect to {url}\n")
        return 1

    try:
        if not await asyncio.wait_for(hooks.negotiated, timeout=args.timeout):
            return 1

        request, result = engine.send_prompt(
            transport.peer_id,
            args.prompt,
            system_prompt=args.system,
            max_tokens=args.max_tokens,
        )
        if not result:
            return 1
        hooks.request_id = request.id

        return 0 if await asyncio.wait_for(hooks.finished, timeout=args.timeout) else 1
    except asyncio.TimeoutError:
        err.write(f"error: timed out after {args.timeout}s\n")
        return 1
    except LinkError as e:
        err.write(f"error: {e}\n")
        return 1
    finally:
        await transport.close()


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        config = LinkConfig.load(args.config)
    except ValueError as e:
        sys.stderr.write(f"error: invalid configuration: {e}\n")
        return 2

    if args.command == "config":
        sys.stdout.write(config.to_json() + "\n")
        return 0

    configure_logging(config.logging.to_options())
    return asyncio.run(_run_connect(args, config))


if __name__ == "__main__":
    sys.exit(main())
