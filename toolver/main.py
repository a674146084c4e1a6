"""
toolver 应用程序主入口点。

同一个可执行文件有两种调用方式：以 toolver 名称调用时是管理命令，
以其他名称（代理入口）调用时分发到当前激活版本中的同名程序。
"""

import sys
from typing import List, Optional

from toolver.cli import REPORTED_ERRORS, create_parser, run_cli
from toolver.core.config_manager import ConfigManager
from toolver.core.dispatcher import InvocationKind, ProxyDispatcher, resolve_invocation
from toolver.core.registry import InstallationRegistry
from toolver.utils.logger import get_logger

logger = get_logger()


def run_proxy(name: str, args: List[str]) -> int:
    """
    以代理方式运行目标程序。

    参数:
        name: 调用名（目标程序名）
        args: 传给目标程序的参数

    返回:
        目标程序的退出码；找不到目标时返回 1
    """
    try:
        config = ConfigManager().config
        dispatcher = ProxyDispatcher(InstallationRegistry(config))
        return dispatcher.dispatch(name, args)
    except REPORTED_ERRORS as e:
        logger.debug(f"分发 {name} 失败", exc_info=True)
        print(f"toolver: {e}", file=sys.stderr)
        return 1


def main(args: Optional[List[str]] = None, argv0: Optional[str] = None) -> int:
    """
    应用程序主入口点。

    参数:
        args: 命令行参数。如果为 None，将使用 sys.argv[1:]。
        argv0: 调用名。如果为 None，将使用 sys.argv[0]。

    返回:
        退出码（0 表示成功，非零表示错误）。
    """
    if argv0 is None:
        argv0 = sys.argv[0] if sys.argv else ""
    if args is None:
        args = sys.argv[1:]

    invocation = resolve_invocation(argv0)
    if invocation.kind == InvocationKind.PROXY:
        return run_proxy(invocation.name, list(args))

    parser = create_parser()
    parsed_args = parser.parse_args(args)
    return run_cli(parsed_args)


if __name__ == "__main__":
    sys.exit(main())
