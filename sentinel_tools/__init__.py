#
# sentinel_tools: detection rules and alerting toolkit
#
# Copyright DeGirum Corporation 2025
# All rights reserved
#

import logging
from typing import Optional


def logger_get():
    """
    Get the package logger.

    Returns:
        Returns the package logger.
    """
    return logging.getLogger(__name__)


def logger_add_handler(
    handler: Optional[logging.Handler] = None,
    format: str = "",
    level: int = logging.DEBUG,
) -> logging.Handler:
    """
    Add a handler to the package logger.

    Args:
        handler: Handler to add to the logger. If None, a new StreamHandler to console is added.
        format: Format string for handler formatter. Defaults to "%(asctime)s [%(levelname)s][%(threadName)s] %(message)s".
        level: Logging level as defined in logging python package. Defaults to logging.DEBUG.

    Returns:
        Returns an instance of added handler.
    """
    logger = logger_get()

    if handler is None:
        handler = logging.StreamHandler()

    if not format:
        format = "%(asctime)s [%(levelname)s][%(threadName)s] %(message)s"
    handler.setFormatter(logging.Formatter(format))
    logger.addHandler(handler)
    logger.setLevel(level)
    return handler


# flake8: noqa

import argparse

from ._version import __version__, __version_info__
from .alert_dispatcher import *
from .config import *
from .detections import *
from .environment import *
from .math_support import *
from .object_associator import *
from .pipeline import *
from .tensor_decoder import *
from .tripwire_evaluator import *
from .zone_evaluator import *


def _command_entrypoint(arg_str=None):
    from .alert_dispatcher import _send_test_alert_args
    from .config import _validate_config_args

    parser = argparse.ArgumentParser(description="Sentinel tools")
    parser.add_argument(
        "--loglevel",
        default=None,
        help="console log level (DEBUG, INFO, WARNING, ...); defaults to SENTINEL_LOG_LEVEL or WARNING",
    )

    subparsers = parser.add_subparsers(
        help="use -h flag to see help on subcommands", required=True
    )

    # validate_config subcommand
    subparser = subparsers.add_parser(
        "validate_config",
        description="Validate configuration file and print effective configuration",
        help="validate configuration file and print effective configuration",
    )
    _validate_config_args(subparser)

    # send_test_alert subcommand
    subparser = subparsers.add_parser(
        "send_test_alert",
        description="Send test alert to the configured webhook",
        help="send test alert to the configured webhook",
    )
    _send_test_alert_args(subparser)

    # parse args
    args = parser.parse_args(arg_str.split() if arg_str else None)

    loglevel = args.loglevel or get_var(var_LogLevel, "WARNING")
    logger_add_handler(level=getattr(logging, str(loglevel).upper(), logging.WARNING))

    # execute subcommand
    args.func(args)
