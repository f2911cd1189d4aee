"""
命令行入口

    python -m xray_tunnel run          启动服务（周期测速、订阅和路由规则更新）
    python -m xray_tunnel ping         测试所有服务器延迟
    python -m xray_tunnel refresh      立即刷新所有订阅
    python -m xray_tunnel subscribe    添加订阅分组
    python -m xray_tunnel routing      立即更新路由规则
    python -m xray_tunnel import FILE  导入分享链接
    python -m xray_tunnel export       导出分享链接
    python -m xray_tunnel config       查看或修改设置
"""
import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Any, List, Optional

from .core.errors import TunnelManagerError
from .core.group import ServerGroup
from .core.service import TunnelService
from .core.store import JsonFileStore
from .core.subscription import encode_to_base64
from .core.tunnel_engine import XrayProcessEngine
from .utils.log_config import setup_logging
from .utils.settings import SettingsManager

logger = logging.getLogger("xray_tunnel")


def build_service(settings: SettingsManager) -> TunnelService:
    store = JsonFileStore(settings.get("store_path", "config/servers.json"))
    engine = XrayProcessEngine(
        xray_path=settings.get("xray_path", "xray"),
        config_path=settings.get("runtime_config_path", "config/tunnel.json"),
    )
    return TunnelService(store=store, engine=engine, settings=settings)


def parse_value(raw: str) -> Any:
    """把命令行中的设置值解析为 JSON，失败时按字符串处理"""
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


async def cmd_run(service: TunnelService, args) -> int:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received stop signal")
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    await service.start(reconnect_last=not args.no_reconnect)
    try:
        await stop_event.wait()
    finally:
        await service.shutdown()
    return 0


async def cmd_ping(service: TunnelService, args) -> int:
    # 只测速，不启动隧道
    service.controller.auto_switch_enabled = False
    sweep = await service.run_ping_sweep()
    if sweep is None:
        return 1

    for record in service.store.servers_by_ping():
        if record.probe.unreachable:
            latency = "timeout"
        elif record.probe.is_probed:
            latency = f"{record.probe.ping}ms"
        else:
            latency = "-"
        print(f"{latency:>8}  {record.protocol.value:<12} {record.display_name}")

    print(f"\n{sweep.probe.reachable}/{sweep.probe.total} reachable")
    return 0


async def cmd_refresh(service: TunnelService, args) -> int:
    service.controller.auto_switch_enabled = False
    if args.group:
        results = [await service.refresh_group(args.group)]
    else:
        results = await service.reconciler.refresh_all()

    failed = 0
    for result in results:
        group = service.store.get_group(result.group_id)
        name = group.name if group else result.group_id
        if result.success:
            print(f"{name}: {result.diff.summary()}")
        else:
            failed += 1
            print(f"{name}: failed ({result.error})")
    return 1 if failed else 0


async def cmd_subscribe(service: TunnelService, args) -> int:
    group = ServerGroup(
        name=args.name,
        subscription_url=args.url,
        auto_update=not args.manual,
        update_interval=args.interval,
    )
    if args.user_agent:
        group.user_agent = args.user_agent
    group = service.store.add_group(group)
    print(f"Added subscription group {group.name} ({group.id})")
    if args.manual:
        return 0
    return await cmd_refresh(service, argparse.Namespace(group=group.id))


async def cmd_routing(service: TunnelService, args) -> int:
    if service.rule_store is not None:
        service.rule_store.load()
    result = await service.reconciler.refresh_routing(force=args.force)
    if result.success:
        print(result.reason)
        return 0
    print(f"Routing update failed: {result.error}", file=sys.stderr)
    return 1


async def cmd_import(service: TunnelService, args) -> int:
    if args.file == "-":
        text = sys.stdin.read()
    else:
        with open(args.file, 'r', encoding='utf-8') as f:
            text = f.read()
    added, errors = service.import_links(text, group_id=args.group)
    for error in errors:
        print(f"skipped: {error}", file=sys.stderr)
    print(f"Imported {len(added)} server(s)")
    return 0 if added or not errors else 1


async def cmd_export(service: TunnelService, args) -> int:
    links = service.export_links(group_id=args.group)
    if args.base64:
        print(encode_to_base64(links))
    else:
        print("\n".join(links))
    return 0


def cmd_config(settings: SettingsManager, args) -> int:
    if args.key is None:
        print_json(settings.get_all())
        return 0
    if args.value is None:
        print_json(settings.get(args.key))
        return 0
    settings.set(args.key, parse_value(args.value))
    print(f"{args.key} = {json.dumps(settings.get(args.key), ensure_ascii=False)}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="xray_tunnel", description='Xray 隧道管理器')
    parser.add_argument('--settings', default="config/settings.json", help='设置文件路径')
    parser.add_argument('--verbose', '-v', action='store_true', help='详细输出')
    sub = parser.add_subparsers(dest='command', required=True)

    run = sub.add_parser('run', help='启动服务')
    run.add_argument('--no-reconnect', action='store_true', help='不自动连接上次使用的服务器')

    sub.add_parser('ping', help='测试所有服务器延迟')

    refresh = sub.add_parser('refresh', help='刷新订阅')
    refresh.add_argument('--group', help='只刷新指定分组ID')

    subscribe = sub.add_parser('subscribe', help='添加订阅分组')
    subscribe.add_argument('name', help='分组名称')
    subscribe.add_argument('url', help='订阅链接')
    subscribe.add_argument('--interval', type=int, default=24 * 60 * 60, help='更新间隔（秒）')
    subscribe.add_argument('--user-agent', help='请求使用的 User-Agent')
    subscribe.add_argument('--manual', action='store_true', help='不自动更新')

    routing = sub.add_parser('routing', help='更新路由规则')
    routing.add_argument('--force', action='store_true', help='即使版本未变化也重新下载')

    import_cmd = sub.add_parser('import', help='导入分享链接')
    import_cmd.add_argument('file', help='链接文件，- 表示标准输入')
    import_cmd.add_argument('--group', help='导入到指定分组ID')

    export = sub.add_parser('export', help='导出分享链接')
    export.add_argument('--group', help='只导出指定分组ID')
    export.add_argument('--base64', action='store_true', help='输出订阅格式（base64）')

    config = sub.add_parser('config', help='查看或修改设置')
    config.add_argument('key', nargs='?', help='设置键')
    config.add_argument('value', nargs='?', help='新值（JSON 格式）')

    return parser


COMMANDS = {
    'run': cmd_run,
    'ping': cmd_ping,
    'refresh': cmd_refresh,
    'subscribe': cmd_subscribe,
    'routing': cmd_routing,
    'import': cmd_import,
    'export': cmd_export,
}


async def run_command(service: TunnelService, args) -> int:
    try:
        return await COMMANDS[args.command](service, args)
    except TunnelManagerError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        if args.command != 'run':
            await service.shutdown()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(level=logging.DEBUG if args.verbose else None)

    settings = SettingsManager(args.settings)
    settings.load()

    if args.command == 'config':
        return cmd_config(settings, args)

    service = build_service(settings)
    return asyncio.run(run_command(service, args))


if __name__ == '__main__':
    sys.exit(main())
