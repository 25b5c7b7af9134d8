"""
Logging utilities for the Transmission RPC adapter
"""

import sys

# Verbosity levels:
# 0 = Errors and warnings only
# 1 = RPC operations (client actions) (-v)
# 2 = Engine calls and handler decisions (-vv)
# 3 = Full trace (request arguments, all details) (-vvv)
VERBOSITY = 0
MAX_VERBOSITY = 3


def set_verbosity(level: int):
    """Set the global verbosity level"""
    global VERBOSITY
    VERBOSITY = max(0, min(level, MAX_VERBOSITY))


def get_verbosity() -> int:
    return VERBOSITY


def log_error(message: str):
    """Always print errors"""
    print(f"[ERROR] {message}", file=sys.stderr)


def log_warning(message: str):
    """Always print warnings"""
    print(f"[WARNING] {message}", file=sys.stderr)


def log_info(message: str):
    """Print info messages at verbosity level 1+ (RPC operations)"""
    if VERBOSITY >= 1:
        print(message)


def log_debug(message: str):
    """Print debug messages at verbosity level 2+ (engine calls)"""
    if VERBOSITY >= 2:
        print(message)


def log_trace(message: str):
    """Print trace messages at verbosity level 3+ (arguments)"""
    if VERBOSITY >= 3:
        print(message)
