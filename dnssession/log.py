import os
import sys

from loguru import logger

LOG_FORMAT = '{time:HH:mm:ss.SSS} | {level:<7} | {extra[role]} | {message}'

# set up the process-wide log sink (call once from a CLI entry point)
def configureLogging(role: str, level: str | None = None):
    level = (level or os.getenv('DNSSESSION_LOG_LEVEL', 'INFO')).upper()
    logger.remove() # drop loguru's default stderr sink
    logger.configure(extra={'role': role})
    logger.add(sys.stderr, level=level, format=LOG_FORMAT, backtrace=False, diagnose=False)
