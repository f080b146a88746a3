"""通用工具函数

提供项目中常用的公共功能，减少代码重复。

主要功能:
    - 模块日志记录器获取
    - 路径展开
    - 后端查询输出（管道分隔、逐行记录）的解析辅助函数
    - 计时上下文管理器
"""

import codecs
import logging
import os
import time
from typing import Optional, List

# 用户中断（Ctrl+C）流式命令时返回的退出码
INTERRUPTED_EXIT_CODE = 130


def setup_module_logger(module_name: str, level: Optional[str] = None) -> logging.Logger:
    """为模块获取标准化的日志记录器

    处理器由 setup_logging 统一挂在根记录器上，这里只负责命名和级别。

    Args:
        module_name: 模块名称
        level: 日志级别，None表示继承根记录器

    Returns:
        日志记录器

    Examples:
        >>> logger = setup_module_logger("stackpilot.history")
        >>> logger.info("This is a log message")
    """
    logger = logging.getLogger(module_name)
    if level:
        logger.setLevel(getattr(logging, level.upper()))
    return logger


def expand_path(path: str) -> str:
    """展开路径开头的 ~ 为用户主目录"""
    if path and path.startswith('~'):
        return os.path.expanduser(path)
    return path


def get_or_empty(parts: List[str], index: int) -> str:
    """安全获取列表元素，越界时返回空字符串"""
    if index < len(parts):
        return parts[index]
    return ""


def split_records(output: str) -> List[str]:
    """把逐行记录的命令输出拆分为非空行列表"""
    if not output or not output.strip():
        return []
    return [line for line in output.strip().split("\n") if line.strip()]


def parse_delimited(output: str, min_fields: int, delimiter: str = "|") -> List[List[str]]:
    """解析管道分隔的查询输出

    字段顺序由调用方的 --format 模板决定，字段数少于 min_fields 的行被丢弃。

    Examples:
        >>> parse_delimited("web|replicated|1/1|nginx\\n", 4)
        [['web', 'replicated', '1/1', 'nginx']]
    """
    rows = []
    for line in split_records(output):
        parts = line.split(delimiter)
        if len(parts) >= min_fields:
            rows.append(parts)
    return rows


class TextSink:
    """把字节块增量解码为UTF-8后写入调用方提供的文本流

    多字节字符被拆分到两个块里时也能正确解码，写入后立即flush。
    """

    def __init__(self, stream):
        self.stream = stream
        self._decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')

    def write(self, data: bytes) -> None:
        text = self._decoder.decode(data)
        if text:
            self._emit(text)

    def close(self) -> None:
        text = self._decoder.decode(b'', final=True)
        if text:
            self._emit(text)

    def _emit(self, text: str) -> None:
        self.stream.write(text)
        flush = getattr(self.stream, 'flush', None)
        if flush:
            flush()


class ContextTimer:
    """上下文管理器形式的计时器

    Examples:
        >>> with ContextTimer() as timer:
        ...     time.sleep(1)
        >>> print(f"Operation took {timer.elapsed:.2f} seconds")
    """

    def __init__(self, logger: Optional[logging.Logger] = None, description: str = "Operation"):
        self.logger = logger
        self.description = description
        self.start_time = None
        self.end_time = None

    def __enter__(self):
        self.start_time = time.time()
        if self.logger:
            self.logger.info(f"{self.description} started")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.end_time = time.time()
        if self.logger:
            status = "completed" if exc_type is None else "failed"
            self.logger.info(f"{self.description} {status} in {self.elapsed:.2f} seconds")

    @property
    def elapsed(self) -> float:
        """获取经过的时间（秒）"""
        if self.start_time is None:
            return 0.0
        end_time = self.end_time if self.end_time is not None else time.time()
        return end_time - self.start_time
