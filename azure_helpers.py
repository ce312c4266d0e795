"""
Shared Console and Azure CLI Helpers
====================================
Common building blocks for the policy and Bastion automation scripts:

  - ANSI colored status output (info / success / warning / error lines,
    section headers, bordered boxes)
  - Platform detection for choosing the right Azure CLI binary
  - A thin wrapper around the Azure CLI that parses JSON output and
    refreshes the login token once on authentication failures
  - Small resource-ID and temp-file utilities

Every script in this repository imports from here; nothing in this module
talks to Azure on import.
"""

import json
import os
import platform
import shutil
import subprocess
import sys
import tempfile
from datetime import datetime, timezone
from typing import Optional


# ══════════════════════════════════════════════════════════════
# ANSI Color Codes
# Colors are disabled when stdout is not a TTY or when a script
# is started with --no-color.
# ══════════════════════════════════════════════════════════════
class Colors:
    """ANSI escape codes for terminal colors and text formatting."""
    RESET   = "\033[0m"
    BOLD    = "\033[1m"
    DIM     = "\033[2m"

    RED     = "\033[91m"
    GREEN   = "\033[92m"
    YELLOW  = "\033[93m"
    BLUE    = "\033[94m"
    MAGENTA = "\033[95m"
    CYAN    = "\033[96m"
    WHITE   = "\033[97m"
    GRAY    = "\033[90m"

    @classmethod
    def disable(cls):
        """Blank out every color constant so output is plain text."""
        for attr in dir(cls):
            if attr.isupper() and not attr.startswith("_"):
                setattr(cls, attr, "")


if not sys.stdout.isatty():
    Colors.disable()

# Windows 10+ needs virtual terminal processing enabled for ANSI codes.
if platform.system() == "Windows":
    try:
        import ctypes
        kernel32 = ctypes.windll.kernel32
        kernel32.SetConsoleMode(kernel32.GetStdHandle(-11), 7)
    except Exception:
        Colors.disable()


BOX_TL = "╔"
BOX_TR = "╗"
BOX_BL = "╚"
BOX_BR = "╝"
BOX_H  = "═"
BOX_V  = "║"

LINE_H = "─"
LINE_V = "│"
CORNER_TL = "┌"
CORNER_TR = "┐"
CORNER_BL = "└"
CORNER_BR = "┘"

ARROW  = "→"
CHECK  = "✓"
CROSS  = "✗"
WARN_ICON = "⚠"
INFO_ICON = "ℹ"
GEAR_ICON = "⚙"
KEY_ICON  = "🔑"
CLOCK_ICON = "⏱"
SHIELD_ICON = "🛡"
SERVER_ICON = "🖥"
TRASH_ICON = "🗑"
FILE_ICON = "📄"

# Set by each script's --verbose flag; echoes az commands before running them.
VERBOSE = False


# ══════════════════════════════════════════════════════════════
# Pretty Print Helpers
# ══════════════════════════════════════════════════════════════

def _width() -> int:
    """Terminal width capped at 80 columns, 70 when it cannot be determined."""
    try:
        return min(os.get_terminal_size().columns, 80)
    except OSError:
        return 70


def print_banner(title: str, subtitle: str = ""):
    """Print a script's title banner inside a double-line box."""
    w = _width()
    print()
    print(f"  {Colors.CYAN}{BOX_TL}{BOX_H * (w - 4)}{BOX_TR}{Colors.RESET}")
    print(f"  {Colors.CYAN}{BOX_V}{Colors.RESET}  {Colors.BOLD}{Colors.WHITE}{SHIELD_ICON} {title}{Colors.RESET}"
          f"{' ' * max(w - len(title) - 8, 0)}{Colors.CYAN}{BOX_V}{Colors.RESET}")
    if subtitle:
        print(f"  {Colors.CYAN}{BOX_V}{Colors.RESET}  {Colors.DIM}{subtitle}{Colors.RESET}"
              f"{' ' * max(w - len(subtitle) - 6, 0)}{Colors.CYAN}{BOX_V}{Colors.RESET}")
    print(f"  {Colors.CYAN}{BOX_BL}{BOX_H * (w - 4)}{BOX_BR}{Colors.RESET}")
    print()


def print_section(title: str, icon: str = ""):
    """
    Print a major section header centred between horizontal rules.

    Args:
        title: The section title text.
        icon:  Optional emoji/icon shown before the title.
    """
    w = _width()
    prefix = f"{icon} " if icon else ""
    label = f" {prefix}{title} "
    line_len = max(w - len(label) - 2, 0)
    left = line_len // 2
    right = line_len - left
    print()
    print(f"  {Colors.BLUE}{LINE_H * left}{Colors.BOLD}{Colors.WHITE}{label}{Colors.RESET}{Colors.BLUE}{LINE_H * right}{Colors.RESET}")
    print()


def print_subsection(title: str):
    """
    Print a minor header, used for each row of a bulk operation.

    Args:
        title: The subsection title text.
    """
    print(f"  {Colors.DIM}{LINE_H * 3}{Colors.RESET} {Colors.BOLD}{title}{Colors.RESET}")


def print_info(msg: str):
    """Print an informational message with a blue info icon."""
    print(f"  {Colors.BLUE}{INFO_ICON}{Colors.RESET}  {msg}")


def print_success(msg: str):
    """Print a success message with a green checkmark icon."""
    print(f"  {Colors.GREEN}{CHECK}{Colors.RESET}  {Colors.GREEN}{msg}{Colors.RESET}")


def print_warn(msg: str):
    """Print a warning message with a yellow warning icon."""
    print(f"  {Colors.YELLOW}{WARN_ICON}{Colors.RESET}  {Colors.YELLOW}{msg}{Colors.RESET}")


def print_error(msg: str):
    """Print an error message with a red cross icon."""
    print(f"  {Colors.RED}{CROSS}{Colors.RESET}  {Colors.RED}{msg}{Colors.RESET}")


def print_skip(msg: str):
    """Print a skip/cancel message with a magenta arrow icon."""
    print(f"  {Colors.MAGENTA}{ARROW}{Colors.RESET}  {Colors.MAGENTA}{msg}{Colors.RESET}")


def print_detail(msg: str):
    """Print an indented, dimmed line under a primary message."""
    print(f"       {Colors.DIM}{msg}{Colors.RESET}")


def print_key_value(key: str, value: str, indent: int = 2):
    """
    Print a dimmed key followed by its value.

    Args:
        key:    Label text (a colon is appended).
        value:  Value text.
        indent: Extra leading spaces.
    """
    spaces = " " * indent
    print(f"{spaces}  {Colors.DIM}{key}:{Colors.RESET} {Colors.WHITE}{value}{Colors.RESET}")


def print_box(lines: list, color: Optional[str] = None):
    """
    Print lines of text inside a single-line bordered box.
    Lines longer than the box are cut at the nearest space and continued
    on the next line with a small indent.

    Args:
        lines: Text lines to display inside the box.
        color: ANSI color for the border (default: cyan).
    """
    color = Colors.CYAN if color is None else color
    inner_w = _width() - 6

    wrapped_lines = []
    for line in lines:
        remaining = line
        indent = " " * min(len(line) - len(line.lstrip()) + 2, inner_w // 2)
        while len(remaining) > inner_w:
            break_at = remaining.rfind(" ", 0, inner_w)
            if break_at < inner_w // 2:
                break_at = inner_w
            wrapped_lines.append(remaining[:break_at])
            remaining = remaining[break_at:].lstrip()
            if remaining:
                remaining = indent + remaining
        wrapped_lines.append(remaining)

    print(f"  {color}{CORNER_TL}{LINE_H * (inner_w + 2)}{CORNER_TR}{Colors.RESET}")
    for line in wrapped_lines:
        padding = max(inner_w - len(line), 0)
        print(f"  {color}{LINE_V}{Colors.RESET} {line}{' ' * padding} {color}{LINE_V}{Colors.RESET}")
    print(f"  {color}{CORNER_BL}{LINE_H * (inner_w + 2)}{CORNER_BR}{Colors.RESET}")


def print_completion_banner(message: str = "All tasks completed successfully"):
    """Print a green bordered banner at the end of a successful run."""
    w = _width()
    label = f" {CHECK} {message} "
    padding = max(w - len(label) - 4, 0)
    left_pad = padding // 2
    right_pad = padding - left_pad
    print()
    print(f"  {Colors.GREEN}{BOX_TL}{BOX_H * (w - 4)}{BOX_TR}{Colors.RESET}")
    print(f"  {Colors.GREEN}{BOX_V}{Colors.RESET}{' ' * left_pad}{Colors.BOLD}{Colors.GREEN}{label}{Colors.RESET}{' ' * right_pad}{Colors.GREEN}{BOX_V}{Colors.RESET}")
    print(f"  {Colors.GREEN}{BOX_BL}{BOX_H * (w - 4)}{BOX_BR}{Colors.RESET}")
    print()


def print_table(headers: list, rows: list, widths: list, row_colors: Optional[list] = None):
    """
    Print a simple bordered table. Cells wider than their column are
    truncated with an ellipsis.

    Args:
        headers:    Column titles.
        rows:       List of row value lists.
        widths:     Column widths (one per header).
        row_colors: Optional ANSI color per row.
    """
    def fmt(values):
        cells = []
        for value, width in zip(values, widths):
            text = "" if value is None else str(value)
            if len(text) > width:
                text = text[:width - 1] + "…"
            cells.append(f"{text:<{width}}")
        return " " + "  ".join(cells) + " "

    total = sum(widths) + 2 * (len(widths) - 1) + 2
    print(f"  {Colors.GRAY}{CORNER_TL}{LINE_H * total}{CORNER_TR}{Colors.RESET}")
    print(f"  {Colors.GRAY}{LINE_V}{Colors.RESET}{Colors.BOLD}{fmt(headers)}{Colors.RESET}{Colors.GRAY}{LINE_V}{Colors.RESET}")
    print(f"  {Colors.GRAY}{LINE_V}{LINE_H * total}{LINE_V}{Colors.RESET}")
    for idx, row in enumerate(rows):
        color = row_colors[idx] if row_colors else ""
        print(f"  {Colors.GRAY}{LINE_V}{Colors.RESET}{color}{fmt(row)}{Colors.RESET}{Colors.GRAY}{LINE_V}{Colors.RESET}")
    print(f"  {Colors.GRAY}{CORNER_BL}{LINE_H * total}{CORNER_BR}{Colors.RESET}")


def styled_input(prompt: str) -> str:
    """Show a prompt prefixed with a green arrow and return the user's input."""
    return input(f"  {Colors.GREEN}{ARROW}{Colors.RESET} {Colors.BOLD}{prompt}{Colors.RESET}")


# ══════════════════════════════════════════════════════════════
# Platform Detection
# Windows needs shell=True to resolve az.cmd; WSL may only have
# the Windows az.cmd on its PATH.
# ══════════════════════════════════════════════════════════════

def is_wsl() -> bool:
    """True when running inside Windows Subsystem for Linux."""
    if platform.system() != "Linux":
        return False
    try:
        with open("/proc/version", "r") as f:
            return "microsoft" in f.read().lower()
    except FileNotFoundError:
        return False


def get_platform_info() -> dict:
    """
    Detect the current platform and the Azure CLI binary to invoke.

    Returns:
        Dict with keys: 'platform' (str), 'system' (str), 'shell' (bool),
        'az_cmd' (str).
    """
    system = platform.system()
    if system == "Windows":
        return {"platform": "Windows", "system": system, "shell": True, "az_cmd": "az"}
    if is_wsl():
        if shutil.which("az"):
            return {"platform": "WSL (native az)", "system": system, "shell": False, "az_cmd": "az"}
        return {"platform": "WSL (Windows az)", "system": system, "shell": False, "az_cmd": "az.cmd"}
    if system == "Darwin":
        return {"platform": "macOS", "system": system, "shell": False, "az_cmd": "az"}
    return {"platform": "Linux", "system": system, "shell": False, "az_cmd": "az"}


PLATFORM = get_platform_info()


# ══════════════════════════════════════════════════════════════
# Azure CLI Helpers
# ══════════════════════════════════════════════════════════════

class AzCliError(RuntimeError):
    """An Azure CLI invocation failed."""

    def __init__(self, message: str, args: Optional[list] = None, stderr: str = ""):
        super().__init__(message)
        self.az_args = args or []
        self.stderr = stderr


AUTH_ERROR_MARKERS = ("AADSTS", "az login", "expired")


def build_command(args: list) -> list:
    """Prepend the platform-appropriate az binary name to a list of arguments."""
    return [PLATFORM["az_cmd"]] + list(args)


def _run(cmd: list, capture: bool = True) -> subprocess.CompletedProcess:
    """
    Run a fully built az command line without checking its exit code.

    Args:
        cmd:     Command list from build_command().
        capture: Capture stdout/stderr as text (False for interactive login).
    """
    if VERBOSE:
        print_detail(f"$ {' '.join(cmd)}")
    return subprocess.run(
        cmd, capture_output=capture, text=True, check=False,
        shell=PLATFORM["shell"],
    )


def _parse_json_output(stdout: str):
    """
    Parse az JSON output. The CLI sometimes prints warning lines before
    the JSON body, so fall back to the first line that opens an object
    or array.
    """
    try:
        return json.loads(stdout)
    except json.JSONDecodeError:
        lines = stdout.strip().splitlines()
        for i, line in enumerate(lines):
            if line.strip().startswith(("{", "[")):
                return json.loads("\n".join(lines[i:]))
        raise


def run_az_command(args: list, parse_json: bool = True, exit_on_error: bool = True):
    """
    Execute an Azure CLI command and return its result.

    When the command fails with an authentication error the token is
    refreshed and the command retried once.

    Args:
        args:          Azure CLI arguments (e.g., ["policy", "exemption", "list"]).
        parse_json:    Append "--output json" and return the parsed object.
                       When False the raw stripped stdout is returned.
        exit_on_error: Print the error and exit(1) on failure (default).
                       When False, raise AzCliError instead so callers can
                       carry on with other work.

    Returns:
        Parsed JSON (dict/list), None for empty JSON output, or a string.
    """
    cmd = build_command(list(args) + (["--output", "json"] if parse_json else []))
    try:
        result = _run(cmd)
        if result.returncode != 0 and any(m in result.stderr for m in AUTH_ERROR_MARKERS):
            print_warn("Access token expired or not found. Refreshing...")
            refresh_token()
            result = _run(cmd)
    except FileNotFoundError:
        print_error(f"Azure CLI ('{PLATFORM['az_cmd']}') not found. Please install it first.")
        sys.exit(1)

    if result.returncode != 0:
        stderr = result.stderr.strip()
        if exit_on_error:
            print_error(f"Azure CLI command failed: {stderr}")
            sys.exit(1)
        raise AzCliError(stderr or f"az exited with code {result.returncode}", args, stderr)

    if not parse_json:
        return result.stdout.strip()
    if not result.stdout.strip():
        return None
    try:
        return _parse_json_output(result.stdout)
    except json.JSONDecodeError:
        if exit_on_error:
            print_error(f"Failed to parse JSON output: {result.stdout[:200]}")
            sys.exit(1)
        raise AzCliError("Failed to parse JSON output", args, result.stdout[:200])


def ensure_az_installed():
    """Exit with an install hint when the az binary is not on PATH."""
    if shutil.which(PLATFORM["az_cmd"]):
        return
    print_error(f"Azure CLI ('{PLATFORM['az_cmd']}') not found. Please install it first.")
    if is_wsl():
        print_detail("Install Azure CLI in WSL: curl -sL https://aka.ms/InstallAzureCLIDeb | sudo bash")
    else:
        print_detail("See https://learn.microsoft.com/cli/azure/install-azure-cli")
    sys.exit(1)


def refresh_token():
    """
    Refresh the Azure CLI token silently, falling back to an interactive
    'az login' when the refresh is rejected. Exits if login fails.
    """
    print_info("Attempting to refresh Azure CLI token...")
    result = _run(build_command(["account", "get-access-token", "--output", "json"]))
    if result.returncode != 0:
        print_info("Token refresh failed. Initiating interactive login...")
        login_result = _run(build_command(["login"]), capture=False)
        if login_result.returncode != 0:
            print_error("Azure login failed. Please run 'az login' manually.")
            sys.exit(1)
    print_success("Token refreshed successfully.")


def ensure_authenticated():
    """
    Make sure the CLI holds a usable token before any real work starts.
    Tokens expiring within five minutes are refreshed up front.
    """
    print_info("Checking Azure CLI authentication...")
    result = _run(build_command(["account", "get-access-token", "--output", "json"]))
    if result.returncode != 0:
        refresh_token()
        return
    try:
        token_info = json.loads(result.stdout)
    except json.JSONDecodeError:
        refresh_token()
        return

    expires_on = token_info.get("expiresOn", "")
    try:
        exp_time = datetime.fromisoformat(expires_on.replace("Z", "+00:00"))
    except (ValueError, TypeError, AttributeError):
        print_success("Authentication valid.")
        return
    if exp_time.tzinfo is None:
        # az reports expiresOn in local time without an offset
        exp_time = exp_time.astimezone()
    if (exp_time - datetime.now(timezone.utc)).total_seconds() < 300:
        print_warn("Token expires soon. Refreshing...")
        refresh_token()
    else:
        print_success("Authentication valid.")


def set_subscription(subscription: str):
    """
    Make a subscription the active one for all following az calls.

    Args:
        subscription: Subscription name or ID. Exits if az rejects it.
    """
    print_info(f"Switching to subscription '{Colors.BOLD}{subscription}{Colors.RESET}'...")
    run_az_command(["account", "set", "--subscription", subscription], parse_json=False)


def get_current_subscription() -> dict:
    """Return the active subscription and print its name and ID."""
    result = run_az_command(["account", "show"])
    print_info(f"Subscription: {Colors.BOLD}{result['name']}{Colors.RESET} {Colors.DIM}({result['id']}){Colors.RESET}")
    return result


# ══════════════════════════════════════════════════════════════
# Resource IDs and Temp Files
# ══════════════════════════════════════════════════════════════

def parse_resource_id(resource_id: str) -> dict:
    """
    Split an ARM resource ID into its named segments.

    Example:
        /subscriptions/S/resourceGroups/RG/providers/Microsoft.Compute/virtualMachines/vm1
        → {"subscription": "S", "resource_group": "RG",
           "provider": "Microsoft.Compute", "type": "virtualMachines", "name": "vm1"}

    Missing segments are returned as empty strings.
    """
    parts = [p for p in (resource_id or "").split("/") if p]
    lowered = [p.lower() for p in parts]

    def after(key):
        if key in lowered:
            idx = lowered.index(key) + 1
            if idx < len(parts):
                return parts[idx]
        return ""

    info = {
        "subscription": after("subscriptions"),
        "resource_group": after("resourcegroups"),
        "provider": "",
        "type": "",
        "name": "",
    }
    if "providers" in lowered:
        idx = len(lowered) - 1 - lowered[::-1].index("providers")
        tail = parts[idx + 1:]
        if len(tail) >= 3:
            info["provider"], info["type"], info["name"] = tail[0], tail[-2], tail[-1]
    elif info["resource_group"]:
        info["name"] = info["resource_group"]
    elif info["subscription"]:
        info["name"] = info["subscription"]
    return info


def write_temp_json(payload, prefix: str) -> str:
    """Write a JSON payload to a new temp file and return its path."""
    fd, path = tempfile.mkstemp(prefix=prefix, suffix=".json")
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2)
    return path


def remove_temp_files(paths):
    """Delete temp files, ignoring ones that are already gone."""
    for path in paths:
        if not path:
            continue
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            print_warn(f"Could not remove temporary file '{path}': {e}")
