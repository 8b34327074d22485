"""本地开发环境启动入口（统一编排 Temporal / Worker / API / Frontend）。"""

from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path

from devstack.config import LOG_LEVEL
from devstack.services.process_supervisor import MonitorMode, ProcessSupervisor, load_runtime_config

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """构建命令行参数。"""

    parser = argparse.ArgumentParser(description="启动本地开发环境的全部服务")
    parser.add_argument("--project-dir", type=Path, default=None, help="服务所在的项目目录")
    parser.add_argument("--env-file", default=None, help=".env 文件路径（相对项目目录）")
    parser.add_argument(
        "--no-reclaim-ports",
        dest="reclaim_ports",
        action="store_false",
        default=None,
        help="启动前不清理端口占用",
    )
    parser.add_argument(
        "--monitor-mode",
        choices=[mode.value for mode in MonitorMode],
        default=None,
        help="watch: 任一服务异常退出即关停; race: 任一服务退出即关停",
    )
    parser.add_argument("--grace-period", type=float, default=None, help="SIGTERM 后等待秒数，超时 SIGKILL")
    return parser


def main(argv: list[str] | None = None) -> int:
    """启动主控进程。"""

    args = build_parser().parse_args(argv)
    config = load_runtime_config(
        project_dir=args.project_dir,
        env_file=args.env_file,
        reclaim=args.reclaim_ports,
        monitor_mode=args.monitor_mode,
        grace_period=args.grace_period,
    )
    logger.info("🏗️  启动本地开发环境 project=%s monitor=%s", config.project_dir, config.monitor_mode.value)

    supervisor = ProcessSupervisor(config)
    try:
        return asyncio.run(supervisor.run())
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
