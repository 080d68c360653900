from __future__ import annotations

import argparse
import asyncio
import io
import json
import socket
from contextlib import closing

import pytest
from aiohttp import WSMsgType, web

from peerstream import cli
from peerstream.engine.config import LinkConfig


def _find_free_port() -> int:
    with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _host_handler(*, compatible: bool = True, fail_prompt: bool = False):
    async def handle(request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        async for msg in ws:
            if msg.type != WSMsgType.TEXT:
                continue
            data = json.loads(msg.data)
            tag = data["t"]
            if tag == "version_negotiate":
                await ws.send_json({"t": "version_ack", "compatible": compatible, "protocolVersion": "1.0.0"})
            elif tag == "get_model":
                await ws.send_json({"t": "model_info", "id": "m1", "displayName": "Test Model", "installed": True})
            elif tag == "prompt":
                rid = data["id"]
                await ws.send_json({"t": "start", "id": rid})
                if fail_prompt:
                    await ws.send_json({"t": "error", "id": rid, "message": "oom"})
                    continue
                await ws.send_json({"t": "reasoning_token", "id": rid, "tok": "pondering"})
                await ws.send_json({"t": "token", "id": rid, "tok": "Hello"})
                await ws.send_json({"t": "token", "id": rid, "tok": " world"})
                await ws.send_json({"t": "end", "id": rid})
        return ws

    return handle


def _connect_args(url: str, **overrides) -> argparse.Namespace:
    params = dict(url=url, config=None, system=None, max_tokens=None, show_reasoning=False, timeout=5.0, prompt="hi")
    params.update(overrides)
    return argparse.Namespace(**params)


def _run_connect_against_host(handler, **overrides):
    out = io.StringIO()
    err = io.StringIO()

    async def scenario() -> int:
        port = _find_free_port()
        app = web.Application()
        app.router.add_get("/ws", handler)
        runner = web.AppRunner(app)
        await runner.setup()
        await web.TCPSite(runner, "127.0.0.1", port).start()
        try:
            args = _connect_args(f"ws://127.0.0.1:{port}/ws", **overrides)
            return await cli._run_connect(args, LinkConfig(), out=out, err=err)
        finally:
            await runner.cleanup()

    code = asyncio.run(scenario())
    return code, out.getvalue(), err.getvalue()


def test_cli_help_exits_zero() -> None:
    with pytest.raises(SystemExit) as exc:
        cli.main(["connect", "--help"])
    assert exc.value.code == 0


def test_cli_config_show_prints_effective_config(tmp_path, capsys) -> None:
    cfg = tmp_path / "peerstream.json"
    cfg.write_text(json.dumps({"identity": {"client_id": "desk-7"}}), encoding="utf-8")

    assert cli.main(["config", "show", "--config", str(cfg)]) == 0

    shown = json.loads(capsys.readouterr().out)
    assert shown["identity"]["client_id"] == "desk-7"
    assert shown["protocol"]["protocol_version"] == "1.0.0"


def test_cli_invalid_config_exits_two(tmp_path, capsys) -> None:
    cfg = tmp_path / "bad.json"
    cfg.write_text(json.dumps({"logging": {"format": "xml"}}), encoding="utf-8")
    assert cli.main(["config", "show", "--config", str(cfg)]) == 2
    assert "invalid configuration" in capsys.readouterr().err


def test_cli_non_numeric_env_setting_exits_two(capsys, monkeypatch) -> None:
    monkeypatch.setenv("PEERSTREAM_TIMEOUTS_NEGOTIATION_S", "soon")
    assert cli.main(["config", "show"]) == 2
    assert "timeouts.negotiation_s" in capsys.readouterr().err


def test_cli_connect_requires_url(capsys, monkeypatch) -> None:
    monkeypatch.delenv("PEERSTREAM_TRANSPORT_URL", raising=False)
    assert cli.main(["connect", "hello"]) == 2
    assert "--url is required" in capsys.readouterr().err


def test_cli_connect_passes_arguments(monkeypatch) -> None:
    seen = {}

    async def fake_run_connect(args, config, **kwargs):
        seen["args"] = args
        seen["config"] = config
        return 0

    monkeypatch.setattr(cli, "_run_connect", fake_run_connect)

    code = cli.main([
        "connect", "--url", "ws://peer/ws", "--system", "be brief",
        "--max-tokens", "32", "--show-reasoning", "--timeout", "3", "tell me a joke",
    ])

    assert code == 0
    args = seen["args"]
    assert (args.url, args.system, args.max_tokens, args.show_reasoning, args.timeout, args.prompt) == (
        "ws://peer/ws", "be brief", "32", True, 3.0, "tell me a joke",
    )
    assert isinstance(seen["config"], LinkConfig)


def test_connect_streams_completion() -> None:
    code, out, err = _run_connect_against_host(_host_handler())
    assert code == 0
    assert out == "Hello world\n"
    assert "[model] Test Model (installed)" in err
    assert "pondering" not in err
    assert "Completion finished successfully." in err


def test_connect_shows_reasoning_when_asked() -> None:
    code, out, err = _run_connect_against_host(_host_handler(), show_reasoning=True)
    assert code == 0
    assert "pondering" in err


def test_connect_stream_error_exits_one() -> None:
    code, out, err = _run_connect_against_host(_host_handler(fail_prompt=True))
    assert code == 1
    assert "Error from server: oom" in err


def test_connect_incompatible_exits_one() -> None:
    code, out, err = _run_connect_against_host(_host_handler(compatible=False))
    assert code == 1
    assert "Protocol version incompatible" in err
    assert out == ""


def test_connect_unreachable_exits_one() -> None:
    err = io.StringIO()
    args = _connect_args(f"ws://127.0.0.1:{_find_free_port()}/ws")

    async def scenario() -> int:
        return await cli._run_connect(args, LinkConfig(), err=err)

    assert asyncio.run(scenario()) == 1
    assert "could not connect" in err.getvalue()
