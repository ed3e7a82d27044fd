"""
SecretChain - Clipboard

Copy a secret, then wipe it after a timeout, but only if the clipboard
still holds our secret (the user may have copied something else since).
"""

import logging
import time
from typing import Callable

import pyperclip

from .errors import ClipboardError

log = logging.getLogger(__name__)


def check_available() -> None:
    """
    Raises:
        ClipboardError: If no clipboard backend works on this machine
    """
    try:
        pyperclip.paste()
    except pyperclip.PyperclipException as e:
        raise ClipboardError(f"clipboard unavailable: {e}")


def copy_with_timeout(text: str, timeout: int, sleep: Callable[[float], None] = time.sleep) -> bool:
    """
    Copy text to the clipboard and clear it after `timeout` seconds.

    Blocks for the timeout. Ctrl+C ends the wait early and still clears.

    Returns:
        True if the clipboard was cleared by us

    Raises:
        ClipboardError: If the clipboard cannot be used
    """
    try:
        pyperclip.copy(text)
    except pyperclip.PyperclipException as e:
        raise ClipboardError(f"clipboard unavailable: {e}")
    try:
        sleep(max(timeout, 0))
    finally:
        cleared = clear_if_unchanged(text)
    return cleared


def clear_if_unchanged(text: str) -> bool:
    try:
        if pyperclip.paste() != text:
            log.info("Clipboard changed since copy, leaving it alone")
            return False
        pyperclip.copy("")
    except pyperclip.PyperclipException as e:
        raise ClipboardError(f"could not clear the clipboard: {e}")
    return True
