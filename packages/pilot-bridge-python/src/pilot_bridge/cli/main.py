"""
pilot-bridge CLI（serve/health/call/host）。

约束：
- 使用 argparse（不引入第三方 CLI 依赖）；
- stdout 输出机器可读 JSON；失败时也输出 JSON；
- `main()` 返回 exit code，不直接 sys.exit（便于测试）。

exit code：
- 0 成功；2 参数错误；3 serve 时地址已被占用；1 health 不可达
- 其它绑定失败（权限不足、地址不可用）按 transport 处理
- 20 validation；21 capacity；23 operation；25 timeout；26 stopped；27 transport
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from pydantic import ValidationError

from pilot_bridge.bootstrap import resolve_config
from pilot_bridge.broker.server import BrokerServer
from pilot_bridge.config.loader import BridgeConfig
from pilot_bridge.core.contracts import QueueOutcome
from pilot_bridge.core.errors import AddressInUseError, BridgeTransportError
from pilot_bridge.host.executor import HostExecutor, builtin_registry
from pilot_bridge.topology.remote import RemoteBroker
from pilot_bridge.topology.selector import BridgeClient

_EXIT_CODES: Dict[str, int] = {
    "validation": 20,
    "capacity": 21,
    "operation": 23,
    "timeout": 25,
    "stopped": 26,
    "transport": 27,
}


def _dump_json_to_stdout(obj: Dict[str, Any], *, pretty: bool) -> None:
    """
    将 dict 输出为 JSON 到 stdout（末尾包含换行）。

    参数：
    - obj：待输出对象（必须可 JSON dumps）
    - pretty：是否启用 pretty-print（indent=2）
    """

    if pretty:
        text = json.dumps(obj, ensure_ascii=False, indent=2)
    else:
        text = json.dumps(obj, ensure_ascii=False, separators=(",", ":"))
    print(text)


def _exit_code_for_outcome(outcome: QueueOutcome) -> int:
    """按 `errorKind` 计算 exit code。"""

    if outcome.success:
        return 0
    return _EXIT_CODES.get(str(outcome.error_kind or ""), 23)


def _configure_logging(cfg: BridgeConfig) -> None:
    """按配置设置日志级别（输出到 stderr，保证 stdout 只有 JSON）。"""

    logging.basicConfig(
        level=getattr(logging, cfg.logging.level, logging.INFO),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_config_for_cli(args: argparse.Namespace) -> BridgeConfig:
    """解析 CLI 的有效配置（`--config` overlays + env + `--host/--port`）。"""

    resolved = resolve_config(
        config_paths=[Path(p) for p in (args.config or [])],
        overrides={"broker.host": args.host, "broker.port": args.port},
    )
    return resolved.config


def _build_parser() -> argparse.ArgumentParser:
    """构建 CLI argparse parser。"""

    parser = argparse.ArgumentParser(
        prog="pilot-bridge",
        description="Local bridge broker between external callers and a polling host.",
    )
    root_sub = parser.add_subparsers(dest="command", required=True)

    def _add_common_flags(p: argparse.ArgumentParser) -> None:
        """为子命令添加公共 flags。"""

        p.add_argument("--config", action="append", default=[], help="Overlay config YAML path (repeatable).")
        p.add_argument("--host", default=None, help="Broker host (overrides config).")
        p.add_argument("--port", type=int, default=None, help="Broker port (overrides config).")
        p.add_argument("--pretty", action="store_true", help="Pretty-print JSON output.")

    serve = root_sub.add_parser("serve", help="Run a persistent broker for the host to poll")
    _add_common_flags(serve)

    health = root_sub.add_parser("health", help="Report the running broker's health snapshot")
    _add_common_flags(health)

    call = root_sub.add_parser("call", help="Send one operation through the bridge and wait for the result")
    _add_common_flags(call)
    call.add_argument("operation", help="Operation name (opaque to the broker).")
    call.add_argument("--params", default="{}", help="Operation params as a JSON value (default: {}).")
    call.add_argument("--timeout-ms", type=int, default=None, help="Per-call timeout in milliseconds.")

    host = root_sub.add_parser("host", help="Run the reference host (builtin status/echo operations)")
    _add_common_flags(host)
    host.add_argument("--poll-interval-ms", type=int, default=None, help="Drain cadence (overrides config).")

    return parser


async def _serve(cfg: BridgeConfig, *, pretty: bool) -> int:
    """运行常驻 broker，直到收到退出信号。"""

    server = BrokerServer(cfg)
    try:
        await server.start()
    except AddressInUseError as exc:
        _dump_json_to_stdout(
            {"ok": False, "error_kind": exc.error_kind, "message": exc.message, "details": exc.details},
            pretty=pretty,
        )
        return 3
    except OSError as exc:
        host, port = cfg.broker.host, cfg.broker.port
        _dump_json_to_stdout(
            {
                "ok": False,
                "error_kind": "transport",
                "message": f"Cannot bind bridge broker on {host}:{port}: {exc}",
                "details": {"host": host, "port": port},
            },
            pretty=pretty,
        )
        return _EXIT_CODES["transport"]

    _dump_json_to_stdout({"ok": True, "role": "owner", "url": server.base_url}, pretty=pretty)
    sys.stdout.flush()
    try:
        await server.wait_closed()
    finally:
        await server.stop()
    return 0


async def _health(cfg: BridgeConfig, *, pretty: bool) -> int:
    """探测 broker 存活状态。"""

    try:
        snapshot = await RemoteBroker(cfg).health()
    except BridgeTransportError as exc:
        _dump_json_to_stdout({"status": "down", "url": cfg.base_url, "error": exc.message}, pretty=pretty)
        return 1
    _dump_json_to_stdout(snapshot, pretty=pretty)
    return 0


async def _call(cfg: BridgeConfig, *, operation: str, params: Any, timeout_ms: Optional[int], pretty: bool) -> int:
    """发起一次调用并输出 `QueueOutcome`。"""

    try:
        async with BridgeClient(cfg) as bridge:
            outcome = await bridge.call(operation, params, timeout_ms=timeout_ms)
    except OSError as exc:
        # 非 EADDRINUSE 的绑定失败：既当不了 owner，也没有可委托的 broker
        outcome = QueueOutcome(
            success=False,
            error=f"Cannot bind bridge broker on {cfg.broker.host}:{cfg.broker.port}: {exc}",
            error_kind="transport",
        )
    _dump_json_to_stdout(outcome.to_wire(), pretty=pretty)
    return _exit_code_for_outcome(outcome)


async def _run_host(cfg: BridgeConfig, *, poll_interval_ms: Optional[int]) -> int:
    """运行参考 host（直到被中断）。"""

    executor = HostExecutor(
        broker=RemoteBroker(cfg),
        dispatch=builtin_registry(),
        poll_interval_ms=int(poll_interval_ms or cfg.host.poll_interval_ms),
    )
    await executor.run_forever()
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    CLI 入口函数（用于 console_scripts 与测试）。

    参数：
    - argv：命令行参数列表（不含程序名）；为 None 时读取 sys.argv[1:]

    返回：
    - int：exit code
    """

    parser = _build_parser()
    try:
        args = parser.parse_args(list(argv) if argv is not None else None)
    except SystemExit as exc:
        # `--help`：0；参数错误：2
        code = getattr(exc, "code", 2)
        return 2 if code is None else int(code)

    pretty = bool(getattr(args, "pretty", False))
    try:
        cfg = _load_config_for_cli(args)
    except (FileNotFoundError, ValueError, ValidationError) as exc:
        _dump_json_to_stdout({"ok": False, "error_kind": "validation", "message": str(exc)}, pretty=pretty)
        return 20
    _configure_logging(cfg)

    try:
        if args.command == "serve":
            return asyncio.run(_serve(cfg, pretty=pretty))
        if args.command == "health":
            return asyncio.run(_health(cfg, pretty=pretty))
        if args.command == "call":
            try:
                params = json.loads(args.params)
            except json.JSONDecodeError as exc:
                _dump_json_to_stdout(
                    {"success": False, "error": f"--params is not valid JSON: {exc}", "errorKind": "validation"},
                    pretty=pretty,
                )
                return 20
            return asyncio.run(
                _call(cfg, operation=str(args.operation), params=params, timeout_ms=args.timeout_ms, pretty=pretty)
            )
        if args.command == "host":
            return asyncio.run(_run_host(cfg, poll_interval_ms=args.poll_interval_ms))
    except KeyboardInterrupt:
        # uvicorn 在优雅退出后会重新抛出捕获到的 SIGINT
        return 0

    _dump_json_to_stdout({"ok": False, "error_kind": "validation", "message": "Unknown command."}, pretty=pretty)
    return 20


def main_entry() -> None:
    """console_scripts 入口：把 `main()` 的返回值作为进程 exit code。"""

    raise SystemExit(main())


if __name__ == "__main__":  # pragma: no cover
    main_entry()
