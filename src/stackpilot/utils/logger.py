"""日志工具模块

提供统一的日志配置：彩色控制台输出和可选的文件日志轮转。

典型用法:
    >>> logger = setup_logging("INFO")
    >>> logger = setup_logging("DEBUG", log_file="logs/stackpilot.log")
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional


class ColoredFormatter(logging.Formatter):
    """彩色日志格式化器"""

    COLORS = {
        'DEBUG': '\033[36m',     # 青色
        'INFO': '\033[32m',      # 绿色
        'WARNING': '\033[33m',   # 黄色
        'ERROR': '\033[31m',     # 红色
        'CRITICAL': '\033[35m',  # 紫色
    }
    RESET = '\033[0m'

    def format(self, record):
        # 复制记录，避免颜色码泄漏到文件处理器
        record = logging.makeLogRecord(record.__dict__)
        log_color = self.COLORS.get(record.levelname, self.RESET)
        record.levelname = f"{log_color}{record.levelname}{self.RESET}"
        return super().format(record)


FORMATS = {
    "human": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    "compact": "%(levelname)s | %(name)s | %(message)s",
    "detailed": "%(asctime)s | %(levelname)s | %(name)s | %(filename)s:%(lineno)d | %(message)s",
}


def setup_logging(log_level: str = "WARNING",
                  log_file: Optional[str] = None,
                  console_format: str = "human",
                  use_color: Optional[bool] = None) -> logging.Logger:
    """设置日志配置

    控制台日志写到stderr，保证命令的标准输出（日志流、exec会话）不被污染。

    Args:
        log_level: 日志级别 (DEBUG/INFO/WARNING/ERROR/CRITICAL)
        log_file: 日志文件路径，None表示不写文件
        console_format: 控制台输出格式 (human/compact/detailed)
        use_color: 是否使用彩色输出，None时根据stderr是否为终端决定

    Returns:
        配置好的根日志记录器
    """
    level = getattr(logging, log_level.upper(), logging.WARNING)

    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG if log_file else level)
    logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    format_string = FORMATS.get(console_format, FORMATS["human"])
    if use_color is None:
        use_color = sys.stderr.isatty()
    if use_color:
        console_handler.setFormatter(ColoredFormatter(format_string))
    else:
        console_handler.setFormatter(logging.Formatter(format_string))
    logger.addHandler(console_handler)

    if log_file:
        file_path = Path(log_file)
        file_path.parent.mkdir(parents=True, exist_ok=True)

        # 使用RotatingFileHandler进行日志轮转
        file_handler = logging.handlers.RotatingFileHandler(
            file_path,
            maxBytes=10*1024*1024,  # 10MB
            backupCount=5,
            encoding='utf-8'
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(FORMATS["detailed"]))
        logger.addHandler(file_handler)

    # 设置第三方库日志级别
    logging.getLogger('paramiko').setLevel(logging.WARNING)

    return logger
