"""
toolver 命令行接口模块。
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from toolver import __version__
from toolver.core.config_manager import ConfigLoadError, ConfigManager, ConfigValidationError
from toolver.core.dispatcher import ActiveVersionError
from toolver.core.download_manager import DownloadManager, DownloadManagerError
from toolver.core.registry import ActivationError, RemovalError
from toolver.core.remote_fetcher import RemoteFetcherError
from toolver.core.rollback_store import RollbackError
from toolver.core.source_builder import BuildError
from toolver.core.version_manager import (
    InstallOutcome,
    InstallStatus,
    UseOutcome,
    VersionManager,
    VersionManagerError,
)
from toolver.core.version_token import ParseError, VersionToken, parse
from toolver.utils.file_lock import LockError
from toolver.utils.logger import get_logger, set_console_level

logger = get_logger()

REPORTED_ERRORS = (
    ParseError,
    ConfigLoadError,
    ConfigValidationError,
    ActivationError,
    RemovalError,
    ActiveVersionError,
    RollbackError,
    LockError,
    RemoteFetcherError,
    DownloadManagerError,
    BuildError,
    VersionManagerError,
    OSError,
)


def create_parser() -> argparse.ArgumentParser:
    """
    创建并配置命令行参数解析器。

    返回:
        配置好的 ArgumentParser 实例
    """
    parser = argparse.ArgumentParser(
        prog="toolver",
        description="toolver - 工具链版本管理器",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
示例:
  toolver install stable      安装最新稳定版
  toolver use nightly         切换到 nightly（未安装时自动安装）
  toolver use v0.10.0         切换到 0.10.0
  toolver rollback            回滚到上一个 nightly
  toolver list                列出已安装版本
  toolver run v0.9.5 --help   不切换直接运行 0.9.5
        """,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="启用详细输出",
    )

    parser.add_argument(
        "--config",
        "-c",
        type=str,
        default=None,
        help="配置文件路径（默认读取 TOOLVER_CONFIG 或平台配置目录）",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        title="命令",
        description="可用的 CLI 命令",
    )

    install_parser = subparsers.add_parser(
        "install",
        help="安装指定版本（不切换）",
    )
    install_parser.add_argument(
        "version",
        help="版本 (stable, nightly, latest, vX.Y.Z 或提交哈希)",
    )

    use_parser = subparsers.add_parser(
        "use",
        help="切换到指定版本",
    )
    use_parser.add_argument(
        "version",
        help="版本 (stable, nightly, latest, vX.Y.Z 或提交哈希)",
    )
    use_parser.add_argument(
        "--no-install",
        action="store_true",
        help="版本未安装时不自动安装",
    )

    uninstall_parser = subparsers.add_parser(
        "uninstall",
        help="卸载指定版本（省略版本则交互选择）",
    )
    uninstall_parser.add_argument(
        "versions",
        nargs="*",
        help="要卸载的版本",
    )
    uninstall_parser.add_argument(
        "--yes",
        "-y",
        action="store_true",
        help="交互选择后不再确认",
    )

    subparsers.add_parser(
        "sync",
        help="切换到同步文件中记录的版本",
    )

    rollback_parser = subparsers.add_parser(
        "rollback",
        help="回滚到之前的 nightly",
    )
    rollback_parser.add_argument(
        "slot",
        nargs="?",
        default=None,
        help="回滚槽位名称或 nightly 标识前缀（默认最新的）",
    )

    subparsers.add_parser(
        "erase",
        help="删除所有安装、回滚版本和代理入口",
    )

    list_parser = subparsers.add_parser(
        "list",
        aliases=["ls"],
        help="列出已安装版本",
    )
    list_parser.add_argument(
        "--format",
        "-f",
        choices=["simple", "json"],
        default="simple",
        help="输出格式",
    )

    list_remote_parser = subparsers.add_parser(
        "list-remote",
        aliases=["ls-remote"],
        help="列出远程可用版本",
    )
    list_remote_parser.add_argument(
        "--format",
        "-f",
        choices=["simple", "json"],
        default="simple",
        help="输出格式",
    )

    update_parser = subparsers.add_parser(
        "update",
        help="更新已安装的 stable 或 nightly",
    )
    update_parser.add_argument(
        "version",
        nargs="?",
        choices=["stable", "nightly"],
        default=None,
        help="要更新的版本",
    )
    update_parser.add_argument(
        "--all",
        action="store_true",
        help="更新所有已安装的 stable 和 nightly",
    )

    run_parser = subparsers.add_parser(
        "run",
        help="不切换版本直接运行指定版本",
    )
    run_parser.add_argument(
        "version",
        help="要运行的版本",
    )
    run_parser.add_argument(
        "args",
        nargs=argparse.REMAINDER,
        help="传给程序的参数",
    )

    return parser


def run_cli(args: argparse.Namespace) -> int:
    """
    运行命令行接口。

    参数:
        args: 解析后的命令行参数

    返回:
        退出码（0 表示成功）
    """
    if args.verbose:
        set_console_level(logging.DEBUG)

    if args.command is None:
        print("未指定命令。使用 --help 查看帮助信息。")
        return 1

    command_handlers = {
        "install": handle_install,
        "use": handle_use,
        "uninstall": handle_uninstall,
        "sync": handle_sync,
        "rollback": handle_rollback,
        "erase": handle_erase,
        "list": handle_list,
        "ls": handle_list,
        "list-remote": handle_list_remote,
        "ls-remote": handle_list_remote,
        "update": handle_update,
        "run": handle_run,
    }

    handler = command_handlers.get(args.command)
    if handler is None:
        print(f"未知命令: {args.command}")
        return 1

    try:
        return handler(args)
    except REPORTED_ERRORS as e:
        logger.debug(f"{args.command} 命令失败", exc_info=True)
        print(f"错误: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\n已取消", file=sys.stderr)
        return 130


def _print_progress(downloaded: int, total: int) -> None:
    percent = int(downloaded / total * 100) if total > 0 else 0
    bar_len = 40
    filled = int(bar_len * percent / 100)
    bar = "=" * filled + "-" * (bar_len - filled)
    end = "\n" if downloaded >= total else ""
    print(f"\r[{bar}] {percent}% ({downloaded}/{total} 字节)", end=end, file=sys.stderr, flush=True)


def _get_manager(args: argparse.Namespace) -> VersionManager:
    """
    根据命令行参数创建版本管理器。

    参数:
        args: 解析后的命令行参数

    返回:
        VersionManager 实例
    """
    config = ConfigManager(Path(args.config) if args.config else None).config
    progress = _print_progress if sys.stderr.isatty() else None
    return VersionManager(config, downloader=DownloadManager(config, progress_callback=progress))


def _print_install_outcome(outcome: InstallOutcome) -> None:
    token = outcome.installed.token
    if outcome.status == InstallStatus.ALREADY_INSTALLED:
        print(f"{token} 已安装")
    elif outcome.status == InstallStatus.NIGHTLY_UP_TO_DATE:
        print("nightly 已是最新版本")
    elif outcome.status == InstallStatus.UPDATED:
        print(f"已更新 {token}")
    else:
        print(f"已安装 {token}")
    if outcome.changelog:
        print("\nnightly 更新内容:")
        for commit in outcome.changelog:
            print(f"  {commit['sha'][:7]} {commit['message']} ({commit['author']})")


def handle_install(args: argparse.Namespace) -> int:
    """
    处理 install 命令：下载并安装指定版本。

    参数:
        args: 解析后的命令行参数

    返回:
        退出码
    """
    token = parse(args.version)
    manager = _get_manager(args)
    print(f"正在安装 {token}...")
    _print_install_outcome(manager.install(token))
    return 0


def _print_use_outcome(outcome: UseOutcome) -> None:
    if outcome.install is not None and outcome.install.status != InstallStatus.ALREADY_INSTALLED:
        _print_install_outcome(outcome.install)
    if outcome.changed:
        print(f"已切换到 {outcome.installed.token}")
    else:
        print(f"{outcome.installed.token} 已经是当前版本")


def handle_use(args: argparse.Namespace) -> int:
    """
    处理 use 命令：切换到指定版本。

    参数:
        args: 解析后的命令行参数

    返回:
        退出码
    """
    token = parse(args.version)
    manager = _get_manager(args)
    _print_use_outcome(manager.use(token, install=not args.no_install))
    return 0


def _select_interactively(manager: VersionManager, assume_yes: bool) -> List[VersionToken]:
    candidates = manager.removable_versions()
    if not candidates:
        print("没有可以卸载的版本（当前激活版本不能卸载）")
        return []

    print("已安装且未激活的版本:")
    for index, installed in enumerate(candidates, start=1):
        print(f"  {index}. {installed.token}")
    answer = input("输入要卸载的版本编号（空格分隔）: ").strip()
    if not answer:
        return []

    selected = []
    for part in answer.replace(",", " ").split():
        if not part.isdigit() or not 1 <= int(part) <= len(candidates):
            print(f"无效的编号: {part}")
            return []
        token = candidates[int(part) - 1].token
        if token not in selected:
            selected.append(token)

    if not assume_yes:
        names = ", ".join(str(t) for t in selected)
        confirm = input(f"确认卸载 {names}? [y/N] ").strip().lower()
        if confirm not in ("y", "yes"):
            print("已取消")
            return []
    return selected


def handle_uninstall(args: argparse.Namespace) -> int:
    """
    处理 uninstall 命令：卸载指定版本，未指定时交互选择。

    参数:
        args: 解析后的命令行参数

    返回:
        退出码
    """
    tokens = [parse(v) for v in args.versions]
    manager = _get_manager(args)
    if not tokens:
        tokens = _select_interactively(manager, args.yes)
        if not tokens:
            return 0

    for token in manager.uninstall(tokens):
        print(f"已卸载 {token}")
    return 0


def handle_sync(args: argparse.Namespace) -> int:
    manager = _get_manager(args)
    _print_use_outcome(manager.sync())
    return 0


def handle_rollback(args: argparse.Namespace) -> int:
    manager = _get_manager(args)
    installed = manager.rollback(args.slot)
    build = installed.full_commit_hash[:7] if installed.full_commit_hash else installed.published_at
    print(f"已回滚 nightly 到 {build or '上一个版本'}")
    return 0


def handle_erase(args: argparse.Namespace) -> int:
    manager = _get_manager(args)
    if manager.erase():
        print("已删除所有安装和回滚版本")
        print("请从 PATH 中移除安装目录: " + str(manager.config.installation_location))
    else:
        print("没有需要删除的内容")
    return 0


def handle_list(args: argparse.Namespace) -> int:
    """
    处理 list 命令：列出已安装版本和回滚版本。

    参数:
        args: 解析后的命令行参数

    返回:
        退出码
    """
    manager = _get_manager(args)
    versions = manager.list_installed()
    active = manager.active()
    active_name = active.token.canonical_name if active else None
    rollbacks = manager.list_rollbacks()

    if args.format == "json":
        result = {
            "active": active_name,
            "versions": [v.to_dict() for v in versions],
            "rollbacks": [
                {
                    "name": slot.name,
                    "nightly_id": slot.nightly_id,
                    "archived_at": slot.archived_at.isoformat(),
                    "path": str(slot.install_path),
                }
                for slot in rollbacks
            ],
        }
        print(json.dumps(result, indent=2, ensure_ascii=False))
        return 0

    if not versions:
        print("未安装任何版本")
    else:
        print("已安装版本:")
        for v in versions:
            marker = " *" if v.token.canonical_name == active_name else "  "
            detail = v.tag_name or ""
            if v.built_from_source:
                detail = f"源码构建 {(v.full_commit_hash or '')[:12]}"
            print(f"{marker} {v.token.canonical_name:<12} {detail}")
            if args.verbose:
                print(f"     路径: {v.install_path}")
    if rollbacks:
        print("\n回滚版本:")
        for slot in rollbacks:
            print(f"   {slot.name}")
    return 0


def handle_list_remote(args: argparse.Namespace) -> int:
    manager = _get_manager(args)
    releases = manager.list_remote()
    if args.format == "json":
        print(json.dumps([
            {
                "tag_name": r.release.tag_name,
                "published_at": r.release.published_at,
                "installed": r.installed,
            }
            for r in releases
        ], indent=2))
        return 0

    if not releases:
        print("未找到远程版本")
        return 0
    print("远程版本:")
    for r in releases:
        marker = " (已安装)" if r.installed else ""
        print(f"  {r.release.tag_name}{marker}")
    return 0


def handle_update(args: argparse.Namespace) -> int:
    token = parse(args.version) if args.version else None
    manager = _get_manager(args)
    outcomes = manager.update(token, update_all=args.all)
    if not outcomes:
        print("没有已安装的 stable 或 nightly 需要更新")
    for outcome in outcomes:
        _print_install_outcome(outcome)
    return 0


def handle_run(args: argparse.Namespace) -> int:
    token = parse(args.version)
    manager = _get_manager(args)
    passthrough = args.args
    if passthrough and passthrough[0] == "--":
        passthrough = passthrough[1:]
    return manager.run(token, passthrough)
