"""
Clipboard publish sink

Copies each finalized transcript to the system clipboard so it can be pasted
into whatever application has focus.
"""

import logging

import pyperclip

logger = logging.getLogger(__name__)


class ClipboardSink:
    """Transcript sink that replaces the clipboard contents"""

    def __init__(self, copy=None):
        self._copy = copy or pyperclip.copy
        self.copied_count = 0

    def __call__(self, text: str) -> None:
        try:
            self._copy(text)
        except pyperclip.PyperclipException as e:
            # No clipboard mechanism (e.g. headless session); keep serving
            logger.warning(f"Clipboard unavailable: {e}")
            return
        self.copied_count += 1
        logger.debug(f"Copied {len(text)} characters to clipboard")
