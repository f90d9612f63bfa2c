#
# environment.py: environment settings support
#
# Copyright DeGirum Corporation 2025
# All rights reserved
#
# Implements functions to operate with various environment settings
#

import dotenv, math, os
from typing import Optional, Any

# environment variable names
var_TestMode = "TEST_MODE"
var_LogLevel = "SENTINEL_LOG_LEVEL"
var_CapFps = "SENTINEL_CAP_FPS"
var_WebhookEnabled = "SENTINEL_ALERT_WEBHOOK_ENABLED"
var_WebhookUrl = "SENTINEL_ALERT_WEBHOOK"
var_BatchEnabled = "SENTINEL_ALERT_BATCH_ENABLED"
var_BatchWindowMs = "SENTINEL_ALERT_BATCH_WINDOW_MS"
var_MaxRetries = "SENTINEL_ALERT_MAX_RETRIES"
var_RetryBackoffMs = "SENTINEL_ALERT_RETRY_BACKOFF_MS"
var_HmacKey = "SENTINEL_ALERT_HMAC_KEY"


def reload_env(custom_file: str = "env.ini"):
    """Reload environment variables from file
    custom_file - name of the custom env file to try first;
        CWD, and ../CWD are searched for the file;
        if it is None or does not exist, `.env` file is loaded
    """

    if get_test_mode():
        return

    env_file = dotenv.find_dotenv(custom_file, usecwd=True)

    dotenv.load_dotenv(
        dotenv_path=env_file if env_file else None, override=True
    )  # load environment variables from file


def get_var(var: Optional[str], default_val: Any = None) -> Any:
    """Returns environment variable value"""
    if var is not None and var.isupper():  # treat `var` as env. var. name
        ret = os.getenv(var)
        if ret is None:
            if default_val is None:
                raise Exception(
                    f"Please define environment variable {var} in `.env` or `env.ini` file located in your CWD"
                )
            else:
                ret = default_val
    else:  # treat `var` literally
        ret = var
    return ret


def get_test_mode() -> bool:
    """Returns enable status of test mode from environment"""
    return bool(os.getenv(var_TestMode))


def get_bool_var(var: str) -> Optional[bool]:
    """Returns boolean value of environment variable or None when it is not set.
    Only the literal string "true" (case-insensitive) is treated as True.
    """
    ret = os.getenv(var)
    if ret is None or ret == "":
        return None
    return ret.strip().lower() == "true"


def get_number_var(var: str) -> Optional[float]:
    """Returns numeric value of environment variable or None when it is not set
    or cannot be parsed as a finite number.
    """
    ret = os.getenv(var)
    if not ret:
        return None
    try:
        value = float(ret)
    except ValueError:
        return None
    if not math.isfinite(value):
        return None
    return value
