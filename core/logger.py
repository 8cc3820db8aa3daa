"""
StoryGen 日志配置

日志布局:
    logs/storygen.log      当前日志（单文件 10 MB 后轮转）
    logs/storygen.log.1-5  轮转备份
控制台同时输出同样格式的文本。级别由环境变量 LOG_LEVEL 控制（默认 INFO）。
各模块只需 logging.getLogger(__name__)，由 app.create_app 调用 setup_logging 统一挂载处理器。
"""
import logging
import logging.handlers
import os
import sys

LOG_DIR = "logs"
LOG_FILE_NAME = "storygen.log"
LOG_FORMAT = '%(asctime)s - %(levelname)s - %(name)s - %(message)s'

# 模型 SDK 的 HTTP 客户端
_NOISY_LOGGERS = ("httpx", "httpcore", "urllib3")


def setup_logging(log_dir: str = LOG_DIR, level: str = None) -> str:
    """
    挂载文件与控制台处理器，返回日志文件路径。
    重复调用会先移除根 logger 上已有的处理器。
    """
    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.join(log_dir, LOG_FILE_NAME)
    formatter = logging.Formatter(LOG_FORMAT)

    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    root.setLevel((level or os.getenv("LOG_LEVEL", "INFO")).upper())

    file_handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=10 * 1024 * 1024, backupCount=5, encoding='utf-8'
    )
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    logging.captureWarnings(True)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return log_path
