
import logging

from rich.console import Console
from rich.logging import RichHandler

from dvb_exporter.constants import LogLevel


# ログレベルと logging のログレベルの対応表
LOG_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


def setupLogging(level: LogLevel = LogLevel.INFO) -> None:
    """
    ルートロガーに Rich のハンドラーを設定する
    ログは標準エラー出力に出力される (標準出力は使わない)

    Args:
        level (LogLevel, optional): ログレベル (debug / info / warn / error). Defaults to LogLevel.INFO.
    """

    logging.basicConfig(
        level = LOG_LEVELS[LogLevel(level)],
        format = '%(message)s',
        handlers = [RichHandler(
            console = Console(stderr=True),
            log_time_format = '[%Y/%m/%d %H:%M:%S]',
            rich_tracebacks = True,
        )],
        force = True,
    )
