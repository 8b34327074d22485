"""`.env` 环境变量加载服务。"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
from pathlib import Path
from typing import Mapping

from dotenv import dotenv_values

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class EnvironmentLoadResult:
    """合并后的环境变量视图。"""

    env_file: Path
    loaded: bool
    values: dict[str, str] = field(default_factory=dict)


def parse_env_file(path: Path) -> dict[str, str]:
    """解析 `.env` 文件，忽略注释/空行以及没有 `=` 的行。

    值按原文保留，不展开 `${VAR}`；未加引号的值中 ` #` 之后视为行内注释。
    """

    parsed = dotenv_values(path, interpolate=False)
    return {key.strip(): value for key, value in parsed.items() if key and key.strip() and value is not None}


def load_environment(env_file: Path, *, base: Mapping[str, str] | None = None) -> EnvironmentLoadResult:
    """读取 `.env` 并叠加到进程环境之上，文件不存在时回退到进程环境。"""

    merged = dict(os.environ if base is None else base)
    if not env_file.is_file():
        logger.warning("⚠️  未找到 %s，使用系统环境变量", env_file)
        return EnvironmentLoadResult(env_file=env_file, loaded=False, values=merged)

    file_values = parse_env_file(env_file)
    merged.update(file_values)
    logger.info("✅ 已从 %s 加载 %d 个环境变量", env_file, len(file_values))
    return EnvironmentLoadResult(env_file=env_file, loaded=True, values=merged)
