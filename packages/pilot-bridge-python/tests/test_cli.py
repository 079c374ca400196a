from __future__ import annotations

import asyncio
import errno
import json
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import pytest

from pilot_bridge.broker.server import BrokerServer, bind_listen_socket
from pilot_bridge.config.loader import BridgeConfig, BrokerConfig
from pilot_bridge.host.executor import HostExecutor, builtin_registry
from pilot_bridge.topology.remote import RemoteBroker


def _run_cli(args: list[str], capsys) -> Tuple[int, Dict[str, Any], str]:  # type: ignore[no-untyped-def]
    """运行 CLI 并返回 (exit_code, parsed_json, raw_stdout)。"""

    from pilot_bridge.cli.main import main

    code = main(args)
    out = capsys.readouterr().out
    assert out.endswith("\n")
    return code, json.loads(out), out


def _clear_bootstrap_env(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    """清理 bootstrap 相关 env，避免本机环境变量影响测试。"""

    for k in [
        "PILOT_BRIDGE_CONFIG_PATHS",
        "PILOT_BRIDGE_HOST",
        "PILOT_BRIDGE_PORT",
        "PILOT_BRIDGE_TIMEOUT_MS",
        "PILOT_BRIDGE_HEALTH_TTL_MS",
        "PILOT_BRIDGE_MAX_QUEUE",
        "PILOT_BRIDGE_MAX_PENDING",
        "PILOT_BRIDGE_MAX_BODY_BYTES",
        "PILOT_BRIDGE_LOG_LEVEL",
    ]:
        monkeypatch.delenv(k, raising=False)


def _free_port() -> int:
    """取一个当前空闲的本机端口。"""

    sock = bind_listen_socket("127.0.0.1", 0)
    port = int(sock.getsockname()[1])
    sock.close()
    return port


class _BackgroundBroker:
    """在后台线程（独立 event loop）运行 broker，可选同时运行参考 host。"""

    def __init__(self, *, with_host: bool) -> None:
        self.with_host = with_host
        self.port = 0
        self._ready = threading.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stop: Optional[asyncio.Event] = None
        self._thread = threading.Thread(target=lambda: asyncio.run(self._main()), daemon=True)

    async def _main(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._stop = asyncio.Event()
        cfg = BridgeConfig(broker=BrokerConfig(host="127.0.0.1", port=0))
        server = BrokerServer(cfg)
        await server.start()
        self.port = server.port

        host_task = None
        if self.with_host:
            host_cfg = BridgeConfig(broker=BrokerConfig(host="127.0.0.1", port=self.port))
            host = HostExecutor(broker=RemoteBroker(host_cfg), dispatch=builtin_registry(), poll_interval_ms=10)
            host_task = asyncio.create_task(host.run_forever(self._stop))

        self._ready.set()
        await self._stop.wait()
        if host_task is not None:
            await host_task
        await server.stop()

    def __enter__(self) -> "_BackgroundBroker":
        self._thread.start()
        assert self._ready.wait(timeout=5.0), "background broker did not start"
        return self

    def __exit__(self, *exc: Any) -> None:
        assert self._loop is not None and self._stop is not None
        self._loop.call_soon_threadsafe(self._stop.set)
        self._thread.join(timeout=10.0)


def test_cli_no_command_is_argparse_error(capsys) -> None:  # type: ignore[no-untyped-def]
    """缺少子命令时返回 2（argparse 错误）。"""

    from pilot_bridge.cli.main import main

    assert main([]) == 2
    assert main(["call"]) == 2
    capsys.readouterr()


def test_cli_health_down_when_no_broker(capsys, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    """无 broker 监听时 health 输出 down 且 exit 1。"""

    _clear_bootstrap_env(monkeypatch)
    port = _free_port()
    code, obj, _out = _run_cli(["health", "--port", str(port)], capsys)
    assert code == 1
    assert obj["status"] == "down"
    assert obj["url"] == f"http://127.0.0.1:{port}"


def test_cli_health_reports_running_broker(capsys, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    """broker 运行中时 health 输出快照且 exit 0。"""

    _clear_bootstrap_env(monkeypatch)
    with _BackgroundBroker(with_host=False) as broker:
        code, obj, _out = _run_cli(["health", "--port", str(broker.port)], capsys)
    assert code == 0
    assert obj["status"] == "ok"
    assert obj["pendingRequests"] == 0
    assert obj["queuedRequests"] == 0


def test_cli_health_pretty_output_is_indented(capsys, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    """--pretty 输出多行缩进 JSON。"""

    from pilot_bridge.cli.main import main

    _clear_bootstrap_env(monkeypatch)
    with _BackgroundBroker(with_host=False) as broker:
        code = main(["health", "--port", str(broker.port), "--pretty"])
    out = capsys.readouterr().out
    assert code == 0
    assert out.startswith("{\n  ")
    obj = json.loads(out)
    assert obj["status"] == "ok"
    assert obj["role"] == "owner"
    assert obj["live"] is False


def test_cli_call_via_delegate_served_by_host(capsys, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    """已有 broker 时 call 作为 delegate 转发，host 执行 echo。"""

    _clear_bootstrap_env(monkeypatch)
    with _BackgroundBroker(with_host=True) as broker:
        code, obj, _out = _run_cli(
            ["call", "echo", "--params", '{"msg": "hi"}', "--timeout-ms", "3000", "--port", str(broker.port)],
            capsys,
        )
    assert code == 0
    assert obj == {"success": True, "data": {"msg": "hi"}}


def test_cli_call_unknown_operation_exit_code(capsys, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    """host 返回失败时 exit 23，错误消息原样输出。"""

    _clear_bootstrap_env(monkeypatch)
    with _BackgroundBroker(with_host=True) as broker:
        code, obj, _out = _run_cli(["call", "nope", "--timeout-ms", "3000", "--port", str(broker.port)], capsys)
    assert code == 23
    assert obj == {"success": False, "error": "Unknown operation: nope", "errorKind": "operation"}


def test_cli_call_without_host_times_out(capsys, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    """无 broker 时 call 自己成为 broker；无 host 则超时 exit 25。"""

    _clear_bootstrap_env(monkeypatch)
    port = _free_port()
    code, obj, _out = _run_cli(["call", "echo", "--timeout-ms", "50", "--port", str(port)], capsys)
    assert code == 25
    assert obj["errorKind"] == "timeout"
    assert "echo" in obj["error"]


def test_cli_call_invalid_params_json(capsys, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    """--params 不是合法 JSON 时 exit 20。"""

    _clear_bootstrap_env(monkeypatch)
    code, obj, _out = _run_cli(["call", "echo", "--params", "{nope"], capsys)
    assert code == 20
    assert obj["errorKind"] == "validation"


def test_cli_missing_config_file_is_validation_error(tmp_path: Path, capsys, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    """--config 指向不存在的文件时 exit 20。"""

    _clear_bootstrap_env(monkeypatch)
    code, obj, _out = _run_cli(["health", "--config", str(tmp_path / "missing.yaml")], capsys)
    assert code == 20
    assert obj["ok"] is False
    assert obj["error_kind"] == "validation"


def test_cli_bad_env_integer_is_validation_error(capsys, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    """整数型 env 不可解析时 exit 20。"""

    _clear_bootstrap_env(monkeypatch)
    monkeypatch.setenv("PILOT_BRIDGE_MAX_QUEUE", "lots")
    code, obj, _out = _run_cli(["health"], capsys)
    assert code == 20
    assert "PILOT_BRIDGE_MAX_QUEUE" in obj["message"]


def test_cli_serve_address_in_use(capsys, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    """端口已被占用时 serve exit 3。"""

    _clear_bootstrap_env(monkeypatch)
    squatter = bind_listen_socket("127.0.0.1", 0)
    try:
        port = int(squatter.getsockname()[1])
        code, obj, _out = _run_cli(["serve", "--port", str(port)], capsys)
    finally:
        squatter.close()
    assert code == 3
    assert obj["error_kind"] == "address_in_use"
    assert obj["details"] == {"host": "127.0.0.1", "port": port}


def _refuse_bind(host: str, port: int, **_kw: Any) -> Any:
    """模拟权限不足的绑定失败（非 EADDRINUSE）。"""

    raise PermissionError(errno.EACCES, "Permission denied")


def test_cli_serve_other_bind_failure_is_json_not_traceback(capsys, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    """EACCES 等绑定失败时 serve 输出 JSON 并 exit 27。"""

    _clear_bootstrap_env(monkeypatch)
    monkeypatch.setattr("pilot_bridge.broker.server.bind_listen_socket", _refuse_bind)
    code, obj, _out = _run_cli(["serve", "--port", "80"], capsys)
    assert code == 27
    assert obj["ok"] is False
    assert obj["error_kind"] == "transport"
    assert "Permission denied" in obj["message"]
    assert obj["details"] == {"host": "127.0.0.1", "port": 80}


def test_cli_call_other_bind_failure_is_transport_outcome(capsys, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    """call 在绑定失败（非占用）时输出 transport 结果并 exit 27。"""

    _clear_bootstrap_env(monkeypatch)
    monkeypatch.setattr("pilot_bridge.broker.server.bind_listen_socket", _refuse_bind)
    code, obj, _out = _run_cli(["call", "echo", "--port", "80"], capsys)
    assert code == 27
    assert obj["success"] is False
    assert obj["errorKind"] == "transport"
    assert obj["error"].startswith("Cannot bind bridge broker on 127.0.0.1:80")


@pytest.mark.parametrize(
    "kind,expected",
    [("validation", 20), ("capacity", 21), ("operation", 23), ("timeout", 25), ("stopped", 26), ("transport", 27)],
)
def test_cli_exit_code_mapping(kind: str, expected: int) -> None:
    from pilot_bridge.cli.main import _exit_code_for_outcome
    from pilot_bridge.core.contracts import QueueOutcome

    assert _exit_code_for_outcome(QueueOutcome(success=False, error="x", error_kind=kind)) == expected
    assert _exit_code_for_outcome(QueueOutcome(success=True, data=None)) == 0
