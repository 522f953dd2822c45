import logging
import sys
import time
import uuid

import proxy_config

FORMAT = '[%(asctime)s] [%(levelname)s] %(message)s'

logger = logging.getLogger('stream_proxy')


def configure_logging(level=None, log_file=None):
    """Send proxy logs to stdout and, if configured, to a log file"""
    level = level or proxy_config.LOG_LEVEL
    log_file = proxy_config.LOG_FILE if log_file is None else log_file

    formatter = logging.Formatter(FORMAT)
    logger.setLevel(level)
    logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger


class RequestLogger(logging.LoggerAdapter):
    """Prefixes every record with the request id"""

    def process(self, msg, kwargs):
        return f"[{self.extra['request_id']}] {msg}", kwargs


def new_request_id():
    return f"proxy_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


def request_logger(request_id):
    return RequestLogger(logger, {'request_id': request_id})


def short(url, limit=100):
    """Trim long URLs for log lines"""
    if url is None:
        return '-'
    return url if len(url) <= limit else url[:limit] + '...'
