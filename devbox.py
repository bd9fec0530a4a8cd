#!/usr/bin/env python3
"""devbox - Remote Container Connection Helper.

A CLI tool that remembers which containers live on each SSH host and
connects to them: attach a tmux session inside a container, or forward a
local port to a container's address.
Target location: ~/.local/bin/devbox
"""

import argparse
import json
import os
import subprocess
import sys
import tomllib
from pathlib import Path

import argcomplete

__version__ = "1.0"

# Default configuration
DEFAULT_CONFIG = {
    "storage_file": "~/.devbox_storage.json",
    "tmux_session": "nvim",
    "container_shell": "bash",
}

# Global verbose flag
VERBOSE = False

# Remote command that prints every container name, running or stopped
LIST_CONTAINERS_COMMAND = "docker ps -a --format {{.Names}}"


class DevboxError(Exception):
    """Base class for errors reported at the subcommand boundary."""


class ConfigError(DevboxError):
    """Config file could not be parsed."""


class DataCorruptionError(DevboxError):
    """Registry file exists but is not a valid registry document."""


class RemoteCommandError(DevboxError):
    """SSH or the remote command exited non-zero."""


class NotFoundError(DevboxError):
    """A remote query returned nothing."""


def verbose_print(msg: str) -> None:
    """Print message if verbose mode is enabled."""
    if VERBOSE:
        print(f"[verbose] {msg}", file=sys.stderr)


def verbose_cmd(cmd: list[str]) -> None:
    """Print command if verbose mode is enabled."""
    if VERBOSE:
        print(f'[verbose] $ {" ".join(cmd)}', file=sys.stderr)


def load_config(global_config_dir: Path | None = None) -> dict:
    """Load configuration from ~/.config/devbox/config.toml.

    Keys missing from the file keep their DEFAULT_CONFIG values.

    Raises:
        ConfigError: If the config file is not valid TOML, or a known key
            is not a string
    """
    config = DEFAULT_CONFIG.copy()

    if global_config_dir is None:
        global_config_dir = Path.home() / ".config" / "devbox"

    global_config_file = global_config_dir / "config.toml"
    if global_config_file.exists():
        verbose_print(f"Loading config from {global_config_file}")
        with open(global_config_file, "rb") as f:
            try:
                global_cfg = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ConfigError(f"{global_config_file}: {e}") from e

        for key in DEFAULT_CONFIG:
            if key in global_cfg and not isinstance(global_cfg[key], str):
                raise ConfigError(f"{global_config_file}: '{key}' must be a string")
        config.update(global_cfg)

    return config


def get_storage_path(config: dict | None = None) -> Path:
    """Get the registry file path, with ~ expanded."""
    if config is None:
        config = DEFAULT_CONFIG
    return Path(os.path.expanduser(config["storage_file"]))


def load_storage(path: Path) -> dict[str, list[str]]:
    """Load the host -> container names registry.

    Args:
        path: Registry file location

    Returns:
        Mapping of SSH name to its stored container names. Empty if the
        file does not exist yet.

    Raises:
        DataCorruptionError: If the file is not a valid registry document
        OSError: If the file exists but cannot be read
    """
    if not path.exists():
        verbose_print(f"No registry at {path}, starting empty")
        return {}

    try:
        content = json.loads(path.read_text())
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise DataCorruptionError(f"{path}: {e}") from e

    containers = content.get("containers") if isinstance(content, dict) else None
    if not isinstance(containers, dict):
        raise DataCorruptionError(f"{path}: missing 'containers' mapping")

    for sshname, names in containers.items():
        if not isinstance(names, list) or not all(isinstance(n, str) for n in names):
            raise DataCorruptionError(
                f"{path}: container list for '{sshname}' is not a list of strings"
            )

    return containers


def save_storage(registry: dict[str, list[str]], path: Path) -> None:
    """Write the full registry, replacing the file contents.

    Raises:
        OSError: On permission or disk problems
    """
    verbose_print(f"Writing registry to {path}")
    path.write_text(json.dumps({"containers": registry}))


def build_network_name_query(container: str) -> str:
    """Remote command printing the first network the container is attached to."""
    return f"docker inspect {container} | jq -r '.[0].NetworkSettings.Networks | keys[0]'"


def build_container_ip_query(network: str, container: str) -> str:
    """Remote command printing the container's address on a network."""
    return (
        f"docker network inspect {network} | "
        f"jq -r '.[0].Containers[] | select(.Name == \"{container}\") | .IPv4Address'"
    )


def build_attach_command(
    sshname: str, container: str, session: str = "nvim", shell: str = "bash"
) -> str:
    """Build the command that attaches (or creates) a tmux session in a container.

    Values are inserted verbatim; nothing is quoted or escaped.

    Args:
        sshname: SSH destination for the remote machine
        container: Container to exec into
        session: tmux session name to attach or create
        shell: Shell used inside the container to run tmux

    Returns:
        Shell command string for the local shell
    """
    tmux_cmd = f"tmux attach-session -t {session} || tmux new-session -s {session}"
    return f"ssh {sshname} -t 'docker exec -it {container} {shell} -c \"{tmux_cmd}\"'"


def build_forward_command(sshname: str, container_ip: str, port: str) -> str:
    """Build the command that tunnels a local port to the same port on a container.

    -N keeps the session open without running a remote command.
    """
    return f"ssh -L {port}:{container_ip}:{port} {sshname} -N"


def run_remote(sshname: str, command: str) -> str:
    """Run one command on the remote host over SSH.

    Returns:
        Captured stdout

    Raises:
        RemoteCommandError: If ssh exits non-zero, whatever the cause
    """
    cmd = ["ssh", sshname, command]
    verbose_cmd(cmd)
    result = subprocess.run(cmd, capture_output=True, text=True)

    if result.returncode != 0:
        verbose_print(f"ssh exited {result.returncode}: {result.stderr.strip()}")
        raise RemoteCommandError(f"'{command}' failed on {sshname}")

    return result.stdout


def list_containers(sshname: str) -> list[str]:
    """List all container names on a remote host.

    Each line is trimmed. Blank lines are kept as empty names.
    """
    output = run_remote(sshname, LIST_CONTAINERS_COMMAND)
    return [line.strip() for line in output.splitlines()]


def _query_value(sshname: str, command: str, what: str) -> str:
    value = run_remote(sshname, command).strip()
    # jq -r prints "null" for missing keys
    if not value or value == "null":
        raise NotFoundError(f"No {what} found on {sshname}")
    return value


def resolve_container_ip(sshname: str, container: str) -> str:
    """Resolve a container's IP address on the remote host.

    Takes two round-trips: the container's first network name, then the
    container's address on that network.

    Raises:
        RemoteCommandError: If either query fails
        NotFoundError: If either query comes back empty
    """
    network = _query_value(
        sshname,
        build_network_name_query(container),
        f"network for container '{container}'",
    )
    verbose_print(f"Container '{container}' is on network '{network}'")

    address = _query_value(
        sshname,
        build_container_ip_query(network, container),
        f"IP address for container '{container}' on network '{network}'",
    )
    # docker reports the address in CIDR form, e.g. 172.17.0.2/16
    return address.split("/")[0]


def execute_command(command: str, context: str) -> bool:
    """Run a command string through the shell and report the outcome.

    Blocks until the command exits; stdin/stdout/stderr are inherited.

    Returns True if the command exited with status 0. Ctrl-C ends the
    command (the usual way to close a tunnel) and returns False.
    """
    verbose_print(f"$ {command}")
    try:
        result = subprocess.run(command, shell=True)
    except KeyboardInterrupt:
        print()
        return False

    if result.returncode == 0:
        print(f"Successfully executed {context} command.")
        return True
    else:
        print(f"Failed to execute {context} command.", file=sys.stderr)
        return False


def sshname_completer(prefix: str, parsed_args: argparse.Namespace, **kwargs) -> list[str]:
    """Complete SSH names from the registry."""
    try:
        registry = load_storage(get_storage_path(load_config()))
    except (DevboxError, OSError):
        return []
    return [name for name in registry if name.startswith(prefix)]


def container_completer(prefix: str, parsed_args: argparse.Namespace, **kwargs) -> list[str]:
    """Complete container names stored for the SSH name already on the line."""
    try:
        registry = load_storage(get_storage_path(load_config()))
    except (DevboxError, OSError):
        return []
    containers = registry.get(getattr(parsed_args, "sshname", None), [])
    return [c for c in containers if c and c.startswith(prefix)]


def parse_args(argv: list[str]) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="devbox",
        description="Development tool for managing container connections",
    )

    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )

    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Print commands being executed"
    )

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

    init_parser = subparsers.add_parser(
        "init",
        help="Initialize devbox with available containers from SSH server",
    )
    init_parser.add_argument(
        "sshname", help="SSH name for the remote machine"
    ).completer = sshname_completer

    nvim_parser = subparsers.add_parser(
        "nvim",
        help="Connect to nvim in a specified container on a specified SSH server",
    )
    nvim_parser.add_argument(
        "sshname", help="SSH name for the remote machine"
    ).completer = sshname_completer
    nvim_parser.add_argument(
        "container", help="Specify which container to connect to"
    ).completer = container_completer

    fp_parser = subparsers.add_parser(
        "fp",
        help="Forward a local port to the same port on a container",
    )
    fp_parser.add_argument(
        "sshname", help="SSH name for the remote machine"
    ).completer = sshname_completer
    fp_parser.add_argument(
        "container", help="Container to forward the port from"
    ).completer = container_completer
    fp_parser.add_argument("port", help="Port to forward")

    subparsers.add_parser(
        "list",
        help="List stored container names for all SSH hosts",
    )

    argcomplete.autocomplete(parser)

    return parser.parse_args(argv)


def run_init_mode(args: argparse.Namespace, config: dict) -> None:
    """Run init: fetch the host's containers and replace its registry entry."""
    path = get_storage_path(config)

    try:
        container_names = list_containers(args.sshname)

        try:
            registry = load_storage(path)
        except (DataCorruptionError, OSError) as e:
            print(f"Warning: ignoring unreadable registry ({e})", file=sys.stderr)
            registry = {}

        registry[args.sshname] = container_names
        save_storage(registry, path)
    except (DevboxError, OSError) as e:
        print(f"Error initializing containers: {e}", file=sys.stderr)
        return

    print(f"Initialized containers for SSH name: {args.sshname}")


def run_nvim_mode(args: argparse.Namespace, config: dict) -> None:
    """Run nvim: attach to the tmux session inside a container."""
    command = build_attach_command(
        args.sshname,
        args.container,
        session=config["tmux_session"],
        shell=config["container_shell"],
    )

    try:
        execute_command(command, f"Neovim in container '{args.container}'")
    except OSError as e:
        print(f"Error connecting to container: {e}", file=sys.stderr)


def run_fp_mode(args: argparse.Namespace, config: dict) -> None:
    """Run fp: forward a local port to the container's address."""
    try:
        container_ip = resolve_container_ip(args.sshname, args.container)
        command = build_forward_command(args.sshname, container_ip, args.port)
        execute_command(
            command, f"port forward {args.port} to container '{args.container}'"
        )
    except (DevboxError, OSError) as e:
        print(f"Error forwarding port: {e}", file=sys.stderr)


def run_list_mode(args: argparse.Namespace, config: dict) -> None:
    """Run list: show stored containers for every SSH name."""
    try:
        registry = load_storage(get_storage_path(config))
    except (DevboxError, OSError) as e:
        print(f"Error loading storage: {e}", file=sys.stderr)
        return

    print("Stored containers by SSH name:")
    for sshname, containers in registry.items():
        print(f"- {sshname}: {json.dumps(containers, ensure_ascii=False)}")


MODES = {
    "init": run_init_mode,
    "nvim": run_nvim_mode,
    "fp": run_fp_mode,
    "list": run_list_mode,
}


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    global VERBOSE

    if argv is None:
        argv = sys.argv[1:]

    args = parse_args(argv)

    # Set verbose mode
    if args.verbose:
        VERBOSE = True

    if args.command is None:
        print("No valid subcommand was provided", file=sys.stderr)
        return

    try:
        config = load_config()
    except (ConfigError, OSError) as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        return

    MODES[args.command](args, config)


if __name__ == "__main__":
    main()
