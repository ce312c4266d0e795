#!/usr/bin/env python3
"""
Azure Bastion RDP Connector
===========================
Opens an RDP session to a VM through Azure Bastion's native-client tunnel,
so the VM needs no public IP and no inbound NSG rule.

Sequence:
  1. Check tooling: az CLI, the 'bastion' CLI extension, login, RDP client
  2. Resolve the VM and Bastion host names to resource IDs
  3. Start 'az network bastion tunnel' as a child process via a temporary
     helper script
  4. Poll the local port (up to 30 times, once per second) until the
     tunnel is listening
  5. Write a temporary .rdp file and launch the native RDP client
  6. Wait for Enter, then close the tunnel and delete the temp files

Requires a Bastion host on the Standard or Premium SKU with native client
support (tunneling) enabled.

Usage:
  python connect_bastion_rdp.py --resource-group rg-app --vm-name vm-app01 --bastion-name bas-hub \\
      --bastion-resource-group rg-hub
"""

import argparse
import os
import platform
import shlex
import shutil
import signal
import socket
import subprocess
import sys
import tempfile
import time
from typing import Callable, Optional

import azure_helpers
from azure_helpers import (
    AzCliError,
    Colors,
    CLOCK_ICON,
    GEAR_ICON,
    KEY_ICON,
    PLATFORM,
    SERVER_ICON,
    build_command,
    ensure_authenticated,
    ensure_az_installed,
    is_wsl,
    print_banner,
    print_box,
    print_completion_banner,
    print_detail,
    print_error,
    print_info,
    print_key_value,
    print_section,
    print_success,
    print_warn,
    remove_temp_files,
    run_az_command,
    set_subscription,
    styled_input,
)


LOCAL_HOST = "127.0.0.1"
DEFAULT_LOCAL_PORT = 55000
DEFAULT_RDP_PORT = 3389
TUNNEL_POLL_ATTEMPTS = 30
TUNNEL_POLL_INTERVAL = 1.0
STOP_GRACE_SECONDS = 5
TUNNEL_SKUS = ("standard", "premium")


class TunnelError(RuntimeError):
    """The Bastion tunnel could not be prepared or started."""


# ══════════════════════════════════════════════════════════════
# Prerequisites
# ══════════════════════════════════════════════════════════════

def ensure_bastion_extension():
    """Install the 'bastion' az extension if it is missing."""
    try:
        ext = run_az_command(["extension", "show", "--name", "bastion"], exit_on_error=False)
        print_success(f"Bastion CLI extension present (version {ext.get('version', '?')}).")
    except AzCliError:
        print_warn("Bastion CLI extension not installed. Installing...")
        run_az_command(["extension", "add", "--name", "bastion"], parse_json=False)
        print_success("Bastion CLI extension installed.")


def is_port_listening(host: str, port: int, timeout: float = 1.0) -> bool:
    """True when a TCP connection to host:port is accepted."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.settimeout(timeout)
            return sock.connect_ex((host, port)) == 0
    except OSError:
        return False


def _windows_path(path: str) -> str:
    """Convert a WSL path so Windows executables can open it."""
    result = subprocess.run(["wslpath", "-w", path], capture_output=True, text=True, check=False)
    return result.stdout.strip() or path


def rdp_client_command(rdp_path: str, host: str = LOCAL_HOST, port: int = DEFAULT_LOCAL_PORT,
                       username: Optional[str] = None, system: Optional[str] = None,
                       wsl: Optional[bool] = None) -> Optional[list]:
    """
    Build the command that opens the native RDP client.

    Windows uses mstsc with the .rdp file, macOS hands the file to the
    registered app (Microsoft Remote Desktop / Windows App), WSL calls the
    Windows mstsc.exe, and Linux uses xfreerdp or remmina.

    Returns:
        The command list, or None when no supported client is installed.
    """
    system = system or platform.system()
    wsl = is_wsl() if wsl is None else wsl
    if system == "Windows":
        return ["mstsc", rdp_path]
    if system == "Darwin":
        return ["open", rdp_path]
    if wsl and shutil.which("mstsc.exe"):
        return ["mstsc.exe", rdp_path]
    for binary in ("xfreerdp3", "xfreerdp"):
        if shutil.which(binary):
            cmd = [binary, f"/v:{host}:{port}", "/cert:ignore", "/dynamic-resolution"]
            if username:
                cmd.append(f"/u:{username}")
            return cmd
    if shutil.which("remmina"):
        return ["remmina", "-c", rdp_path]
    return None


def check_prerequisites(local_port: int, need_client: bool = True):
    """
    Validate local tooling and port before touching Azure resources.
    Exits with an error message on the first failed check.
    """
    ensure_az_installed()
    print_success(f"Azure CLI found ({PLATFORM['platform']}).")
    ensure_bastion_extension()
    ensure_authenticated()

    if need_client:
        if rdp_client_command("session.rdp") is None:
            print_error("No RDP client found.")
            print_detail("Install FreeRDP (xfreerdp) or Remmina, or use --tunnel-only.")
            sys.exit(1)
        print_success("RDP client available.")

    if is_port_listening(LOCAL_HOST, local_port):
        print_error(f"Local port {local_port} is already in use.")
        print_detail("Close the other tunnel or pass a different --local-port.")
        sys.exit(1)
    print_success(f"Local port {local_port} is free.")


# ══════════════════════════════════════════════════════════════
# Resource Resolution
# ══════════════════════════════════════════════════════════════

def resolve_vm_id(resource_group: str, vm_name: str) -> str:
    """Return the resource ID of a VM, exiting if it cannot be found."""
    print_info(f"Resolving VM '{Colors.BOLD}{vm_name}{Colors.RESET}' in '{resource_group}'...")
    try:
        vm_id = run_az_command(["vm", "show", "--resource-group", resource_group,
                                "--name", vm_name, "--query", "id"], exit_on_error=False)
    except AzCliError as e:
        print_error(f"VM '{vm_name}' not found in resource group '{resource_group}'.")
        print_detail(str(e))
        sys.exit(1)
    if not vm_id:
        print_error(f"VM '{vm_name}' returned no resource ID.")
        sys.exit(1)
    print_success("VM found.")
    print_detail(vm_id)
    return vm_id


def resolve_bastion(resource_group: str, bastion_name: str) -> dict:
    """
    Look up the Bastion host. Warns when its SKU or settings do not
    support native-client tunneling, since the tunnel will then fail.
    """
    print_info(f"Resolving Bastion '{Colors.BOLD}{bastion_name}{Colors.RESET}' in '{resource_group}'...")
    try:
        bastion = run_az_command(["network", "bastion", "show", "--resource-group", resource_group,
                                  "--name", bastion_name], exit_on_error=False)
    except AzCliError as e:
        print_error(f"Bastion host '{bastion_name}' not found in resource group '{resource_group}'.")
        print_detail(str(e))
        sys.exit(1)

    sku = ((bastion.get("sku") or {}).get("name") or "").lower()
    tunneling = bastion.get("enableTunneling")
    print_success(f"Bastion found (SKU: {sku or 'unknown'}).")
    if sku and sku not in TUNNEL_SKUS:
        print_warn(f"SKU '{sku}' does not support native client tunneling. Standard or Premium is required.")
    elif tunneling is False:
        print_warn("Native client support (tunneling) is disabled on this Bastion host.")
    return bastion


# ══════════════════════════════════════════════════════════════
# Tunnel Process
# ══════════════════════════════════════════════════════════════

def build_tunnel_command(bastion_name: str, bastion_resource_group: str, target_id: str,
                         local_port: int = DEFAULT_LOCAL_PORT,
                         resource_port: int = DEFAULT_RDP_PORT,
                         subscription: Optional[str] = None) -> list:
    """
    Build the full 'az network bastion tunnel' command line.

    Args:
        bastion_name:           Bastion host name.
        bastion_resource_group: Resource group of the Bastion host.
        target_id:              Resource ID of the target VM.
        local_port:             Port the tunnel listens on locally.
        resource_port:          Port on the VM (RDP).
        subscription:           Optional subscription override.
    """
    args = [
        "network", "bastion", "tunnel",
        "--name", bastion_name,
        "--resource-group", bastion_resource_group,
        "--target-resource-id", target_id,
        "--resource-port", str(resource_port),
        "--port", str(local_port),
    ]
    if subscription:
        args += ["--subscription", subscription]
    return build_command(args)


def write_helper_script(command: list, system: Optional[str] = None) -> str:
    """
    Write the tunnel command into a temporary helper script (.cmd on
    Windows, .sh elsewhere) and return its path.
    """
    system = system or platform.system()
    if system == "Windows":
        suffix = ".cmd"
        content = "@echo off\r\n" + subprocess.list2cmdline(command) + "\r\n"
    else:
        suffix = ".sh"
        content = "#!/bin/sh\nexec " + " ".join(shlex.quote(part) for part in command) + "\n"
    fd, path = tempfile.mkstemp(prefix="bastion-tunnel-", suffix=suffix)
    with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
        f.write(content)
    os.chmod(path, 0o700)
    return path


def create_tunnel_log() -> str:
    """Create an empty temp file that receives the tunnel's stderr."""
    fd, path = tempfile.mkstemp(prefix="bastion-tunnel-", suffix=".log")
    os.close(fd)
    return path


def start_tunnel(script_path: str, log_path: str) -> subprocess.Popen:
    """
    Run the helper script as a child process.

    On POSIX the child leads its own process group, so stop_tunnel() can
    signal the whole tree (the az wrapper script and the Python process
    it starts). stderr goes to `log_path` rather than a pipe, since
    nothing reads it while the session is open.

    Args:
        script_path: Helper script from write_helper_script().
        log_path:    File that receives the tunnel's stderr.
    """
    if script_path.endswith(".cmd"):
        cmd = ["cmd", "/c", script_path]
        session = {}
    else:
        cmd = ["sh", script_path]
        session = {"start_new_session": True}
    if azure_helpers.VERBOSE:
        print_detail(f"$ {' '.join(cmd)}")
    with open(log_path, "w", encoding="utf-8") as log:
        return subprocess.Popen(cmd, stdin=subprocess.DEVNULL, stdout=subprocess.DEVNULL,
                                stderr=log, **session)


def wait_for_tunnel(process, port: int, host: str = LOCAL_HOST,
                    attempts: int = TUNNEL_POLL_ATTEMPTS,
                    interval: float = TUNNEL_POLL_INTERVAL,
                    probe: Callable[[str, int], bool] = is_port_listening,
                    sleep: Callable[[float], None] = time.sleep) -> bool:
    """
    Poll until the tunnel's local port is listening.

    Makes at most `attempts` probes, `interval` seconds apart, with no
    backoff. Stops early and returns False if the tunnel process exits.

    Returns:
        True as soon as the port accepts connections, False otherwise.
    """
    for attempt in range(1, attempts + 1):
        if process.poll() is not None:
            print_error(f"Tunnel process exited with code {process.returncode}.")
            return False
        if probe(host, port):
            print_success(f"Tunnel is listening on {host}:{port} (attempt {attempt}/{attempts}).")
            return True
        print_detail(f"Waiting for tunnel... ({attempt}/{attempts})")
        if attempt < attempts:
            sleep(interval)
    print_error(f"Tunnel did not open port {port} within {attempts} attempts.")
    return False


def _signal_group(process, sig):
    """Send a signal to the tunnel's process group; False if it is already gone."""
    try:
        os.killpg(process.pid, sig)
    except ProcessLookupError:
        return False
    return True


def stop_tunnel(process):
    """
    Stop the tunnel and every process it started.

    Windows kills the tree with taskkill. POSIX sends SIGTERM to the
    process group, then SIGKILL if it has not exited after
    STOP_GRACE_SECONDS.
    """
    if process is None or process.poll() is not None:
        return
    print_info("Closing Bastion tunnel...")
    windows = platform.system() == "Windows"
    if windows:
        # cmd.exe does not forward termination to the az child
        subprocess.run(["taskkill", "/T", "/F", "/PID", str(process.pid)],
                       capture_output=True, check=False)
    elif not _signal_group(process, signal.SIGTERM):
        process.terminate()
    try:
        process.wait(timeout=STOP_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        if windows or not _signal_group(process, signal.SIGKILL):
            process.kill()
        process.wait()
    print_success("Tunnel closed.")


def read_tunnel_errors(log_path: Optional[str], max_lines: int = 8) -> list:
    """Return the last lines the tunnel wrote to its log file."""
    if not log_path:
        return []
    try:
        with open(log_path, "r", encoding="utf-8", errors="replace") as f:
            lines = [line.rstrip() for line in f if line.strip()]
    except OSError:
        return []
    return lines[-max_lines:]


# ══════════════════════════════════════════════════════════════
# RDP File and Client
# ══════════════════════════════════════════════════════════════

def build_rdp_file(host: str = LOCAL_HOST, port: int = DEFAULT_LOCAL_PORT,
                   username: Optional[str] = None) -> str:
    """Return the contents of an .rdp file pointing at the local tunnel."""
    lines = [
        f"full address:s:{host}:{port}",
        "prompt for credentials:i:1",
        "authentication level:i:2",
        "screen mode id:i:2",
        "redirectclipboard:i:1",
    ]
    if username:
        lines.append(f"username:s:{username}")
    return "\r\n".join(lines) + "\r\n"


def write_rdp_file(host: str = LOCAL_HOST, port: int = DEFAULT_LOCAL_PORT,
                   username: Optional[str] = None, label: str = "vm") -> str:
    """
    Write the .rdp file to a new temp file and return its path.

    Args:
        host:     Local tunnel address.
        port:     Local tunnel port.
        username: Optional user name to pre-fill.
        label:    Included in the file name (usually the VM name).
    """
    fd, path = tempfile.mkstemp(prefix=f"bastion-{label}-", suffix=".rdp")
    with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
        f.write(build_rdp_file(host, port, username))
    return path


def launch_rdp_client(rdp_path: str, host: str = LOCAL_HOST, port: int = DEFAULT_LOCAL_PORT,
                      username: Optional[str] = None):
    """
    Start the native RDP client without waiting for it to close.

    Under WSL the .rdp path is converted to a Windows path only when the
    chosen client is the Windows mstsc.exe.

    Raises:
        TunnelError: If no client is installed or it fails to start.
    """
    cmd = rdp_client_command(rdp_path, host, port, username)
    if cmd is None:
        raise TunnelError("No RDP client found.")
    if cmd[0] == "mstsc.exe":
        cmd[1] = _windows_path(rdp_path)
    print_info(f"Launching RDP client: {Colors.BOLD}{cmd[0]}{Colors.RESET}")
    if azure_helpers.VERBOSE:
        print_detail(f"$ {' '.join(cmd)}")
    try:
        return subprocess.Popen(cmd, stdin=subprocess.DEVNULL,
                                stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
    except OSError as e:
        raise TunnelError(f"Failed to start '{cmd[0]}': {e}") from e


# ══════════════════════════════════════════════════════════════
# Main Entry Point
# ══════════════════════════════════════════════════════════════

def build_parser() -> argparse.ArgumentParser:
    """Build the command-line parser, with usage examples in the epilog."""
    parser = argparse.ArgumentParser(
        description="Connect to an Azure VM over RDP through an Azure Bastion native-client tunnel.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # VM and Bastion in the same resource group
  python connect_bastion_rdp.py -g rg-app --vm-name vm-app01 --bastion-name bas-app

  # Hub-and-spoke: Bastion lives in the hub resource group
  python connect_bastion_rdp.py -g rg-app --vm-name vm-app01 --bastion-name bas-hub --bastion-resource-group rg-hub

  # Use another local port and pre-fill the user name
  python connect_bastion_rdp.py -g rg-app --vm-name vm-app01 --bastion-name bas-app --local-port 55001 --username azureadmin

  # Only open the tunnel (connect with your own client to 127.0.0.1:55000)
  python connect_bastion_rdp.py -g rg-app --vm-name vm-app01 --bastion-name bas-app --tunnel-only
        """,
    )
    parser.add_argument("--resource-group", "-g", required=True, help="Resource group of the VM.")
    parser.add_argument("--vm-name", required=True, help="Name of the target VM.")
    parser.add_argument("--bastion-name", required=True, help="Name of the Bastion host.")
    parser.add_argument("--bastion-resource-group", help="Resource group of the Bastion host (default: the VM's).")
    parser.add_argument("--subscription", help="Subscription name or ID to use.")
    parser.add_argument("--local-port", type=int, default=DEFAULT_LOCAL_PORT,
                        help=f"Local tunnel port (default: {DEFAULT_LOCAL_PORT}).")
    parser.add_argument("--resource-port", type=int, default=DEFAULT_RDP_PORT,
                        help=f"RDP port on the VM (default: {DEFAULT_RDP_PORT}).")
    parser.add_argument("--username", help="User name to pre-fill in the RDP client.")
    parser.add_argument("--attempts", type=int, default=TUNNEL_POLL_ATTEMPTS,
                        help=f"Readiness checks, one per second, before giving up (default: {TUNNEL_POLL_ATTEMPTS}).")
    parser.add_argument("--tunnel-only", action="store_true", help="Open the tunnel without launching a client.")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show each az command before it runs.")
    parser.add_argument("--no-color", action="store_true", help="Disable colored output.")
    return parser


def main(argv: Optional[list] = None) -> int:
    """
    Entry point. Parses arguments, checks prerequisites and runs the
    requested operation.

    Returns:
        Process exit code (0 on success, 1 on any handled failure).
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.no_color:
        Colors.disable()
    azure_helpers.VERBOSE = args.verbose
    bastion_rg = args.bastion_resource_group or args.resource_group

    if not 1 <= args.local_port <= 65535:
        print_error(f"Port {args.local_port} is out of range. Must be 1-65535.")
        return 1
    if args.attempts < 1:
        print_error(f"--attempts must be at least 1 (got {args.attempts}).")
        return 1

    print_banner("Azure Bastion RDP Connector", "Native-client tunnel to a private VM")

    print_section("Prerequisites", KEY_ICON)
    check_prerequisites(args.local_port, need_client=not args.tunnel_only)
    if args.subscription:
        set_subscription(args.subscription)

    print_section("Resources", SERVER_ICON)
    vm_id = resolve_vm_id(args.resource_group, args.vm_name)
    resolve_bastion(bastion_rg, args.bastion_name)

    temp_files = []
    tunnel = None
    try:
        print_section("Tunnel", GEAR_ICON)
        command = build_tunnel_command(args.bastion_name, bastion_rg, vm_id,
                                       args.local_port, args.resource_port, args.subscription)
        script_path = write_helper_script(command)
        temp_files.append(script_path)
        print_info(f"Starting tunnel {LOCAL_HOST}:{args.local_port} {Colors.DIM}→{Colors.RESET} "
                   f"{args.vm_name}:{args.resource_port}")
        log_path = create_tunnel_log()
        temp_files.append(log_path)
        tunnel = start_tunnel(script_path, log_path)

        print_section("Waiting for Tunnel", CLOCK_ICON)
        if not wait_for_tunnel(tunnel, args.local_port, attempts=args.attempts):
            stop_tunnel(tunnel)
            errors = read_tunnel_errors(log_path)
            if errors:
                print_box(errors, color=Colors.RED)
            print_box([
                "Possible causes:",
                "  • Bastion SKU is Basic or native client support is disabled",
                "  • Missing 'Reader' role on the VM, NIC or Bastion host",
                "  • The bastion CLI extension is outdated (az extension update --name bastion)",
            ], color=Colors.YELLOW)
            return 1

        if not args.tunnel_only:
            print_section("Remote Desktop", SERVER_ICON)
            rdp_path = write_rdp_file(LOCAL_HOST, args.local_port, args.username, label=args.vm_name)
            temp_files.append(rdp_path)
            launch_rdp_client(rdp_path, LOCAL_HOST, args.local_port, args.username)

        print()
        print_key_value("Tunnel", f"{LOCAL_HOST}:{args.local_port}")
        print_key_value("Target", f"{args.vm_name} ({args.resource_group})")
        print()
        try:
            styled_input("Press Enter to close the tunnel and exit... ")
        except (EOFError, KeyboardInterrupt):
            print()
    except TunnelError as e:
        print_error(str(e))
        return 1
    finally:
        stop_tunnel(tunnel)
        remove_temp_files(temp_files)

    print_completion_banner("Session closed")
    return 0


if __name__ == "__main__":
    sys.exit(main())
