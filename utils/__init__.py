"""
Utility functions and helpers for the Bilibili notifier.

This package contains command argument parsing and reply formatting shared
by the plugin's command handlers.
"""

from .command_utils import (
    parse_command_flags,
    split_command,
    format_search_results,
    format_login_info,
)

__all__ = [
    "parse_command_flags",
    "split_command",
    "format_search_results",
    "format_login_info",
]
