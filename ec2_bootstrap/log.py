"""
Console logging for the provisioning entry points.

Everything goes to stdout so the output lands in cloud-init's log
(/var/log/cloud-init-output.log) when run from user data.
"""

from __future__ import annotations
import datetime
import logging
import sys


class Colors:
    RED = '\033[0;31m'
    GREEN = '\033[0;32m'
    YELLOW = '\033[1;33m'
    BLUE = '\033[0;34m'
    CYAN = '\033[0;36m'
    MAGENTA = '\033[0;35m'
    NC = '\033[0m'


class ColoredFormatter(logging.Formatter):
    """Level-colored formatter; debug/warning/error lines carry the call site"""

    FORMATS = {
        logging.DEBUG: f"{Colors.CYAN}[%(asctime)s] [DEBUG] [%(funcName)s:%(lineno)d]{Colors.NC} %(message)s",
        logging.INFO: f"{Colors.BLUE}[%(asctime)s] [INFO]{Colors.NC} %(message)s",
        logging.WARNING: f"{Colors.YELLOW}[%(asctime)s] [WARNING] [%(funcName)s:%(lineno)d]{Colors.NC} %(message)s",
        logging.ERROR: f"{Colors.RED}[%(asctime)s] [ERROR] [%(funcName)s:%(lineno)d]{Colors.NC} %(message)s",
        logging.CRITICAL: f"{Colors.MAGENTA}[%(asctime)s] [CRITICAL] [%(funcName)s:%(lineno)d]{Colors.NC} %(message)s",
    }

    def format(self, record):
        log_fmt = self.FORMATS.get(record.levelno)
        formatter = logging.Formatter(log_fmt, datefmt='%Y-%m-%d %H:%M:%S')
        return formatter.format(record)


logger = logging.getLogger("ec2_bootstrap")
logger.setLevel(logging.INFO)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ColoredFormatter())
    logger.addHandler(handler)


def set_verbose(verbose: bool):
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    if verbose:
        debug("Verbose logging enabled")


def _with_fields(msg: str, fields: dict) -> str:
    if fields:
        msg += f" | {fields}"
    return msg


def _now() -> str:
    return datetime.datetime.now().strftime('%Y-%m-%d %H:%M:%S')


def debug(msg: str, **kwargs):
    logger.debug(_with_fields(msg, kwargs), stacklevel=2)


def info(msg: str, **kwargs):
    logger.info(_with_fields(msg, kwargs), stacklevel=2)


def warning(msg: str, **kwargs):
    logger.warning(_with_fields(msg, kwargs), stacklevel=2)


def error(msg: str, **kwargs):
    logger.error(_with_fields(msg, kwargs), stacklevel=2)


def success(msg: str, **kwargs):
    """Success messages bypass the logger so they show at every level"""
    print(f"{Colors.GREEN}[{_now()}] [SUCCESS]{Colors.NC} {_with_fields(msg, kwargs)}")


def dry_run_print(desc: str, cmd: str = ""):
    """Print an action that dry-run mode skipped"""
    print(f"{Colors.YELLOW}[{_now()}] [DRY-RUN]{Colors.NC} {desc}")
    if cmd:
        print(f"  Command: {cmd}")


def banner(title: str, lines):
    print("\n" + "=" * 50)
    info(title)
    print("=" * 50)
    for line in lines:
        print(line)
    print("=" * 50 + "\n")
