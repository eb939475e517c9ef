# utils/log_utils.py
import os
import logging

LOG_DIR = os.getenv("LOG_DIR", os.path.dirname(os.path.abspath(__file__)))
LOG_FORMAT = '[%(asctime)s] %(levelname)s %(name)s: %(message)s'


def get_logger(name, filename="payments.log"):
    """
    获取命名 logger，控制台 + 文件双输出，只配置一次
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT)

    # 控制台输出
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # 文件输出
    if filename:
        file_handler = logging.FileHandler(os.path.join(LOG_DIR, filename))
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
