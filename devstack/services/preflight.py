"""启动前检查：必填环境变量、外部命令以及服务依赖安装。"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import shutil
import subprocess
from pathlib import Path
from typing import Callable, Iterable, Mapping

from devstack.services.service_launcher import ServiceDescriptor

logger = logging.getLogger(__name__)

WhichFunc = Callable[[str], str | None]


class PreflightError(RuntimeError):
    """启动前检查失败，此时尚未拉起任何子进程。"""

    def __init__(self, problems: list[str]) -> None:
        super().__init__("; ".join(problems))
        self.problems = list(problems)


class DependencyInstallError(RuntimeError):
    """前端依赖安装失败。"""


@dataclass(frozen=True, slots=True)
class RequiredTool:
    """必须存在于 PATH 中的外部命令。"""

    command: str
    product: str
    install_url: str


def find_missing_env_vars(env: Mapping[str, str], required: Iterable[str]) -> list[str]:
    """返回全部缺失（或为空）的环境变量名，保持声明顺序。"""

    return [name for name in required if not str(env.get(name) or "").strip()]


def check_env_vars(env: Mapping[str, str], required: Iterable[str]) -> None:
    """校验必填环境变量，一次性报告所有缺失项。"""

    missing = find_missing_env_vars(env, required)
    if not missing:
        return

    for name in missing:
        logger.error("❌ 缺少必填环境变量: %s", name)
    logger.error("💡 请在 .env 文件中设置以上变量，可参考 .env.example")
    raise PreflightError([f"缺少必填环境变量: {name}" for name in missing])


def check_required_tools(tools: Iterable[RequiredTool], *, which: WhichFunc = shutil.which) -> None:
    """校验外部命令可用，遇到第一个缺失命令立即失败。"""

    for tool in tools:
        if which(tool.command):
            continue
        logger.error("❌ 未找到 %s（命令 `%s`），请先安装:", tool.product, tool.command)
        logger.error("   %s", tool.install_url)
        raise PreflightError([f"未找到命令 {tool.command}，安装说明: {tool.install_url}"])


def ensure_dependencies(
    descriptor: ServiceDescriptor,
    env: Mapping[str, str],
    *,
    runner: Callable[..., subprocess.CompletedProcess[bytes]] = subprocess.run,
) -> bool:
    """服务依赖目录（如 `node_modules`）缺失时执行安装命令，返回是否实际执行了安装。"""

    if not descriptor.install_command:
        return False

    workdir = descriptor.cwd or Path.cwd()
    if descriptor.install_marker and (workdir / descriptor.install_marker).exists():
        return False

    command = list(descriptor.install_command)
    logger.info("📦 正在为 %s 安装依赖: %s", descriptor.name, " ".join(command))
    try:
        result = runner(
            command,
            cwd=str(workdir),
            env=dict(env),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except OSError as exc:
        raise DependencyInstallError(f"{descriptor.name} 依赖安装无法执行: {exc}") from exc

    if result.returncode != 0:
        stderr = (result.stderr or b"").decode("utf-8", errors="replace").strip()
        if stderr:
            logger.error("%s 输出:\n%s", " ".join(command), stderr)
        raise DependencyInstallError(f"{descriptor.name} 依赖安装失败 code={result.returncode}")

    logger.info("✅ %s 依赖安装完成", descriptor.name)
    return True
