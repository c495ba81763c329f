# main.py
# Entry launcher for the Department File Transfer system.
# Lets the user start the server, start the client, create the department directories, or quit.

import sys          # process exit handling

from deptxfer.common.constants import DEFAULT_BASE_DIR, DEFAULT_PORT

#### Menu Display ####
MENU = (
    "\n"
    "=== Department File Transfer System ===\n"
    "Select mode to run:\n"
    "  1. Server\n"
    "  2. Client\n"
    "  3. Setup directories\n"
    "  4. Quit\n"
    "=======================================\n"
)


def _prompt(label, default):
    """Ask for a value, returning the default on an empty answer."""
    raw = input(f"{label} [{default}]: ").strip()
    return raw or str(default)


#### Menu actions ####
def _run_server():
    from deptxfer.server.server_main import main as server_main

    base_dir = _prompt("Storage base directory", DEFAULT_BASE_DIR)
    port = _prompt("Port", DEFAULT_PORT)
    print("\n[INFO] Starting server... (Ctrl+C to stop)\n")
    return server_main(["serve", "--base-dir", base_dir, "--port", port]) == 0


def _run_client():
    from deptxfer.client.client_main import main as client_main

    host = _prompt("Server address", "127.0.0.1")
    port = _prompt("Port", DEFAULT_PORT)
    print("\n[INFO] Starting client...\n")
    return client_main(["--host", host, "--port", port]) == 0


def _run_setup():
    from deptxfer.server.server_main import main as server_main

    base_dir = _prompt("Storage base directory", DEFAULT_BASE_DIR)
    return server_main(["setup", "--base-dir", base_dir]) == 0


#### Main Launcher ####
def main():
    """
    Main entry point for the launcher menu.

    Ctrl+C inside a server or client run returns to the menu; at the menu
    itself it exits the process.
    """
    actions = {"1": _run_server, "2": _run_client, "3": _run_setup}
    in_subprogram = False

    while True:
        try:
            print(MENU, end="")
            choice = input("\nEnter choice (1-4): ").strip()

            if choice == "4":
                print("Exiting program.")
                break

            action = actions.get(choice)
            if action is None:
                print("Invalid choice. Please enter 1, 2, 3, or 4.\n")
                continue

            in_subprogram = True
            if not action():
                print("\n[i] Returning to main menu.\n")
            in_subprogram = False

        except (KeyboardInterrupt, EOFError):
            if in_subprogram:
                print("\n[i] Interrupted. Returning to main menu.\n")
                in_subprogram = False
                continue
            print("\n[i] Keyboard interrupt detected. Exiting program.\n")
            sys.exit(0)
        except SystemExit as exc:
            # argparse exits on a bad value such as a non-numeric port.
            in_subprogram = False
            if exc.code not in (0, None):
                print("[x] Invalid input. Returning to main menu.\n")


#### Run as Script ####
if __name__ == "__main__":
    main()
