"""
Cross-platform path handling.

Provides:
- Platform-appropriate SSH directory and known_hosts locations
- The per-user configuration directory for jet-access
- Path expansion
"""
from __future__ import annotations

import os
import sys
from pathlib import Path

APP_NAME = "jet-access"


def is_windows() -> bool:
    """Check if running on Windows."""
    return sys.platform == "win32"


def expand_path(path: str | Path) -> Path:
    """Expand ~ and environment variables in a path."""
    return Path(os.path.expandvars(os.path.expanduser(str(path))))


def get_ssh_dir() -> Path:
    """
    Get the platform-appropriate SSH directory.

    Returns:
        ~/.ssh on Unix, %USERPROFILE%\\.ssh on Windows
    """
    if is_windows():
        userprofile = os.environ.get("USERPROFILE")
        if userprofile:
            return Path(userprofile) / ".ssh"
    return Path.home() / ".ssh"


def get_known_hosts_path() -> Path:
    """Get the user's known_hosts file path."""
    return get_ssh_dir() / "known_hosts"


def get_system_known_hosts_path() -> Path:
    """
    Get the system-wide known_hosts file path.

    Returns:
        /etc/ssh/ssh_known_hosts on Unix, %ProgramData%\\ssh\\ssh_known_hosts on Windows
    """
    if is_windows():
        program_data = os.environ.get("ProgramData", "C:\\ProgramData")
        return Path(program_data) / "ssh" / "ssh_known_hosts"
    return Path("/etc/ssh/ssh_known_hosts")


def get_known_hosts_read_paths() -> list[Path]:
    """Known_hosts files consulted for verification, user file first."""
    return [get_known_hosts_path(), get_system_known_hosts_path()]


def get_known_hosts_write_path() -> Path:
    """Known_hosts file that newly trusted keys are appended to."""
    return get_known_hosts_path()


def get_user_config_dir() -> Path:
    """
    Get the per-user configuration directory for jet-access.

    Returns:
        $XDG_CONFIG_HOME/jet-access (or ~/.config/jet-access) on Unix,
        %APPDATA%\\jet-access on Windows
    """
    if is_windows():
        appdata = os.environ.get("APPDATA")
        if appdata:
            return Path(appdata) / APP_NAME
        return Path.home() / "AppData" / "Roaming" / APP_NAME

    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / APP_NAME
    return Path.home() / ".config" / APP_NAME
