#!/usr/bin/env python3
"""
HyperTerminal session sharing the download port

A HyperTerminal window can be told to disconnect before the download and to
reconnect afterwards, so a debug console and the loader can share one port.
Only available on Windows; elsewhere no session is ever found.
"""

import ctypes
import sys

# Debug messages control variable
DEBUG_PRINT = False

WM_COMMAND = 0x0111


class TerminalSession:
    """Disconnect / reconnect a terminal window found by its window class"""

    WINDOW_CLASS = "SESSION_WINDOW"
    CONNECT_COMMAND = 0x190
    DISCONNECT_COMMAND = 0x191

    def __init__(self, window_class: str = WINDOW_CLASS):
        self.window_class = window_class

    def _find_window(self) -> int:
        if sys.platform != "win32":
            if DEBUG_PRINT:
                print(f"No terminal sessions on {sys.platform}")
            return 0
        return ctypes.windll.user32.FindWindowW(self.window_class, None) or 0

    def _send_command(self, command: int) -> bool:
        hwnd = self._find_window()
        if not hwnd:
            return False
        if DEBUG_PRINT:
            print(f"Sending WM_COMMAND 0x{command:03X} to window {hwnd:#x}")
        ctypes.windll.user32.SendMessageW(hwnd, WM_COMMAND, command, 0)
        return True

    def close(self) -> bool:
        """Disconnect the session, False if no session window is open"""
        return self._send_command(self.DISCONNECT_COMMAND)

    def reopen(self) -> bool:
        """Reconnect the session, False if no session window is open"""
        return self._send_command(self.CONNECT_COMMAND)
