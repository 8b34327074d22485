"""子进程输出转发：按行切分并加上服务名前缀。"""

from __future__ import annotations

import asyncio
import codecs
import logging
from typing import TextIO

logger = logging.getLogger(__name__)

BENIGN_STREAM_ERRORS: tuple[type[BaseException], ...] = (BrokenPipeError, ConnectionResetError)


class LineSplitter:
    """把任意切分的字节块还原为完整文本行。

    不完整的 UTF-8 序列与未结束的行都会缓存到下一个块，
    流结束时由 `flush` 输出残留内容。
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes) -> list[str]:
        """喂入一个字节块，返回其中已完整的行（不含换行符）。"""

        self._pending += self._decoder.decode(chunk)
        if "\n" not in self._pending:
            return []
        *lines, self._pending = self._pending.split("\n")
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        """返回流结束时剩余的最后一行。"""

        tail = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        if not tail:
            return []
        return [line.rstrip("\r") for line in tail.split("\n")]


def format_line(name: str, line: str) -> str:
    return f"[{name}] {line}"


async def relay_stream(
    stream: asyncio.StreamReader,
    name: str,
    sink: TextIO,
    *,
    chunk_size: int = 4096,
) -> None:
    """持续读取子进程输出并写入控制台，空白行被忽略。"""

    splitter = LineSplitter()

    def _emit(lines: list[str]) -> None:
        for line in lines:
            if not line.strip():
                continue
            sink.write(format_line(name, line) + "\n")
        sink.flush()

    try:
        while True:
            chunk = await stream.read(chunk_size)
            if not chunk:
                break
            _emit(splitter.feed(chunk))
    except asyncio.CancelledError:
        raise
    except BENIGN_STREAM_ERRORS:
        pass
    except Exception:
        logger.exception("[%s] 读取输出流失败", name)
    finally:
        _emit(splitter.flush())
