# deptxfer/client/client_main.py
# Interactive upload client: prompts for credentials, a file and a department.

import argparse     # command line
import getpass      # hidden password prompt
import os           # local file checks
import sys          # process exit codes

from deptxfer.analysis.performance_eval import timed         # client-side session timing
from deptxfer.client.commands import ClientError, TransferClient
from deptxfer.common.constants import DEFAULT_CLIENT_HOST, DEFAULT_PORT
from deptxfer.common.departments import PRIORITY_ORDER
from deptxfer.common.logger import configure_logging

#### Department menu ####
DEPARTMENT_MENU = "Select department:\n" + "".join(
    f"  {number}. {dept.value}\n" for number, dept in enumerate(PRIORITY_ORDER, start=1)
)


def _choose_department(choice):
    """
    Map a menu choice to a department selector.

    Accepts a menu number or a department name typed in full.

    Returns:
        str | None: The selector to send, or None for an unknown choice.
    """
    choice = choice.strip()
    if choice.isdigit():
        index = int(choice) - 1
        if 0 <= index < len(PRIORITY_ORDER):
            return PRIORITY_ORDER[index].value
        return None
    for dept in PRIORITY_ORDER:
        if choice.lower() == dept.value.lower():
            return dept.value
    return None


#### Interactive prompts ####
def _prompt_credentials():
    """Ask for username and password. Returns (None, None) on an empty username."""
    username = input("Username: ").strip()
    if not username:
        print("Username cannot be empty.")
        return None, None
    # getpass so the password is not echoed.
    password = getpass.getpass("Password: ")
    return username, password


def _prompt_upload():
    """Ask for the local file and the target department."""
    local_path = input("File to upload: ").strip()
    if not os.path.isfile(local_path):
        print(f"[x] File '{local_path}' not found.")
        return None, None

    while True:
        print(DEPARTMENT_MENU, end="")
        department = _choose_department(input("Enter choice: "))
        if department is not None:
            return local_path, department
        print("Invalid choice. Please try again.")


def _print_progress(sent, total):
    """Overwrite one console line with the upload percentage."""
    percent = 100.0 if total == 0 else sent * 100.0 / total
    print(f"\rProgress: {percent:.1f}%", end="" if sent < total else "\n", flush=True)


#### Command line ####
def build_parser():
    parser = argparse.ArgumentParser(
        prog="deptxfer-client",
        description="Upload one file to a department on the transfer server",
    )
    parser.add_argument("--host", default=DEFAULT_CLIENT_HOST,
                        help=f"Server address (default: {DEFAULT_CLIENT_HOST})")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT,
                        help=f"Server port (default: {DEFAULT_PORT})")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (default: WARNING)")
    return parser


#### Main Entry Point ####
def run_client(host, port):
    """
    Run one interactive upload.

    Returns:
        bool: True when the server accepted the file, False otherwise.
    """
    print("====== Department File Transfer Client ======")
    username, password = _prompt_credentials()
    if username is None:
        return False

    timer = timed()
    client = TransferClient(host, port)
    if not client.connect():
        print(f"[x] Could not connect to {host}:{port}.")
        return False

    ok = False
    try:
        ok, reply = client.authenticate(username, password)
        print(reply)
        if not ok:
            return False

        local_path, department = _prompt_upload()
        if local_path is None:
            return False

        ok, reply = client.upload(local_path, department, progress=_print_progress)
        print(reply)
    except ClientError as exc:
        print(f"[x] {exc}")
        ok = False
    finally:
        client.close()
        client.perf.record_response(operation="client_session", seconds=timer(),
                                    outcome="ok" if ok else "failed", source="client")
        print(f"Disconnected from server. Session duration: {timer():.2f}s\n")

    return ok


def main(argv=None):
    """
    Entry point for the deptxfer-client command.

    Returns:
        int: 0 when the upload succeeded, 1 otherwise.
    """
    args = build_parser().parse_args(argv)
    try:
        configure_logging(args.log_level)
    except ValueError as exc:
        print(f"Invalid logging configuration: {exc}")
        return 2

    if not 0 <= args.port <= 65535:
        print("Port must be between 0-65535.")
        return 2

    try:
        return 0 if run_client(args.host, args.port) else 1
    except (KeyboardInterrupt, EOFError):
        print("\n[i] Interrupted.")
        return 1


#### Run as Script ####
if __name__ == "__main__":
    sys.exit(main())
