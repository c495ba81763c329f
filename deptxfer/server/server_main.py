# deptxfer/server/server_main.py
# Starts the multithreaded transfer server and runs one handler per client connection.

import argparse     # command line
import getpass      # hidden password prompts for set-password
import logging
import signal       # SIGTERM shutdown
import socket       # TCP server sockets
import sys          # process exit codes
import threading    # per-client threads

from deptxfer.analysis.performance_eval import PerfRecorder, timed   # timing and metrics
from deptxfer.common.constants import (
    ACCEPT_POLL_SECONDS,
    AUTH_FAILED,
    CHUNK_SIZE,
    DEFAULT_BACKLOG,
    DEFAULT_BASE_DIR,
    DEFAULT_DIR_MODE,
    DEFAULT_IO_TIMEOUT,
    DEFAULT_PORT,
    DEFAULT_SERVER_HOST,
    DEFAULT_TRANSFER_TIMEOUT,
    TRANSFER_FAILED,
)
from deptxfer.common.wire import MessageStream, WireError
from deptxfer.server.auth import authenticate
from deptxfer.server.config import ServerConfig
from deptxfer.server.credentials import AcceptAnyCredential, CredentialStore
from deptxfer.server.errors import TransferError, TransferServerError
from deptxfer.server.file_ops import FileReceiver
from deptxfer.server.identity import StaticIdentityProvider, SystemIdentityProvider
from deptxfer.common.logger import configure_logging
from deptxfer.server.storage import StorageGuard, setup_directories

logger = logging.getLogger(__name__)

INTERNAL_ERROR = "Internal server error"


def _peer_label(addr):
    """Format a peer address as host:port for log lines."""
    if isinstance(addr, tuple) and len(addr) >= 2:
        return f"{addr[0]}:{addr[1]}"
    return str(addr)


#### Connection handler ####
class ConnectionHandler:
    """
    Owns one accepted connection from start to finish.

    Steps:
      1. Authenticate (identity + credential -> Session).
      2. Receive one file into the session's department.
      3. Close the connection.

    Every terminal error produces exactly one reply to the peer (best
    effort) and is contained here; nothing propagates to the accept loop or
    to other connections.
    """

    def __init__(self, conn, addr, identity_provider, credential_checker, receiver,
                 io_timeout=None, chunk_size=None, perf=None):
        self.conn = conn
        self.addr = addr
        self.identity_provider = identity_provider
        self.credential_checker = credential_checker
        self.receiver = receiver
        self.io_timeout = io_timeout
        self.chunk_size = chunk_size
        self.perf = perf or PerfRecorder()
        self.peer = _peer_label(addr)

    def _reply_failure(self, stream, template, exc):
        """Send the single error reply for a terminal failure, ignoring send errors."""
        reason = exc.reason if isinstance(exc, (TransferServerError, WireError)) else INTERNAL_ERROR
        if not stream.send_line_quietly(template.format(reason=reason)):
            logger.debug("[session] Could not deliver error reply to %s", self.peer)

    def run(self):
        logger.info("[+] New connection from %s", self.peer)
        session_timer = timed()

        try:
            self.conn.settimeout(self.io_timeout)
        except OSError as exc:
            logger.warning("[session] Could not set timeout for %s: %s", self.peer, exc)

        if self.chunk_size:
            stream = MessageStream(self.conn, chunk_size=self.chunk_size)
        else:
            stream = MessageStream(self.conn)

        session = None
        try:
            session = self._authenticate(stream)
            if session is not None:
                self._receive(stream, session)
        except Exception:
            # Safety net around the per-client thread.
            logger.exception("[session] Unexpected error with %s", self.peer)
            template = AUTH_FAILED if session is None else TRANSFER_FAILED
            stream.send_line_quietly(template.format(reason=INTERNAL_ERROR))
        finally:
            stream.close()
            elapsed = session_timer()
            self.perf.record_response(operation="session", seconds=elapsed, meta={"peer": self.peer})
            logger.info("[-] Connection closed with %s (session %.2fs)", self.peer, elapsed)

    def _authenticate(self, stream):
        """
        Run the authentication protocol.

        Returns:
            Session | None: The session, or None after a handled failure.
        """
        timer = timed()
        try:
            session = authenticate(stream, self.identity_provider, self.credential_checker, peer=self.addr)
        except (TransferServerError, WireError) as exc:
            self.perf.record_response(operation="auth", seconds=timer(), outcome=type(exc).__name__,
                                      meta={"peer": self.peer})
            logger.info("[auth] Authentication failed for %s: %s", self.peer, exc.reason)
            self._reply_failure(stream, AUTH_FAILED, exc)
            return None

        self.perf.record_response(operation="auth", seconds=timer(),
                                  meta={"peer": self.peer, "username": session.username,
                                        "department": session.department.value})
        logger.info(
            "[auth] User '%s' authenticated from %s (department %s)",
            session.username, self.peer, session.department.value,
        )
        return session

    def _receive(self, stream, session):
        """Run the file-receive protocol and report the outcome."""
        timer = timed()
        meta = {"peer": self.peer, "username": session.username, "department": session.department.value}
        try:
            result = self.receiver.receive(stream, session)
        except (TransferServerError, WireError) as exc:
            received = exc.received if isinstance(exc, TransferError) else 0
            self.perf.record_transfer(operation="upload", bytes_count=received, seconds=timer(),
                                      outcome=type(exc).__name__, meta=meta)
            logger.info("[upload] File transfer failed for '%s' from %s: %s",
                        session.username, self.peer, exc.reason)
            self._reply_failure(stream, TRANSFER_FAILED, exc)
            return None

        meta["filename"] = result.filename
        self.perf.record_transfer(operation="upload", bytes_count=result.bytes_written,
                                  seconds=timer(), meta=meta)
        return result


#### Server ####
def build_identity_provider(config):
    """Static user table when configured, otherwise the system user database."""
    if config.users_file:
        return StaticIdentityProvider.from_json(config.users_file)
    return SystemIdentityProvider()


def build_credential_checker(config):
    """Password verification when a credential file is configured."""
    if config.credentials_file:
        logger.info("[auth] Verifying passwords against %s", config.credentials_file)
        return CredentialStore(config.credentials_file)
    return AcceptAnyCredential()


class FileTransferServer:
    """
    TCP accept loop that spawns one daemon thread per client connection.

    The accept loop is single-threaded and never waits on a worker. All
    workers share the identity provider, credential checker, file receiver
    and storage guard passed in (or built from the config).
    """

    def __init__(self, config, identity_provider=None, credential_checker=None, guard=None, perf=None):
        self.config = config
        self.identity_provider = identity_provider or build_identity_provider(config)
        self.credential_checker = credential_checker or build_credential_checker(config)
        if not self.credential_checker.verifies:
            logger.warning("[auth] Password verification is disabled; any password is accepted for known users")
        self.guard = guard or StorageGuard(config.lock_scope)
        self.receiver = FileReceiver(config.base_dir, self.guard, transfer_timeout=config.transfer_timeout)
        self.perf = perf or PerfRecorder()

        self.socket = None
        self._shutdown_event = threading.Event()
        self._loop_done = threading.Event()
        self._loop_thread = None

    @property
    def server_address(self):
        """(host, port) actually bound; useful when port 0 was requested."""
        return self.socket.getsockname()[:2]

    def bind(self):
        """
        Create, bind and listen on the server socket.

        Raises:
            OSError: If the address cannot be bound.
        """
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.config.host, self.config.port))
            sock.listen(self.config.backlog)
            # Periodic wake-up so shutdown() is noticed.
            sock.settimeout(ACCEPT_POLL_SECONDS)
        except OSError:
            sock.close()
            raise

        self.socket = sock
        host, port = self.server_address
        logger.info("Server listening on %s:%d", host, port)
        return self.server_address

    def serve_forever(self):
        """Accept connections until shutdown() is called."""
        if self.socket is None:
            self.bind()

        self._loop_done.clear()
        try:
            while not self._shutdown_event.is_set():
                try:
                    conn, addr = self.socket.accept()
                except socket.timeout:
                    continue
                except OSError as exc:
                    if self._shutdown_event.is_set():
                        break
                    logger.error("Accept failed: %s", exc)
                    continue

                handler = ConnectionHandler(
                    conn,
                    addr,
                    self.identity_provider,
                    self.credential_checker,
                    self.receiver,
                    io_timeout=self.config.io_timeout,
                    chunk_size=self.config.chunk_size,
                    perf=self.perf,
                )
                thread = threading.Thread(
                    target=handler.run,
                    name=f"client-{_peer_label(addr)}",
                    daemon=True,
                )
                thread.start()
        finally:
            try:
                self.socket.close()
            except OSError:
                pass
            self._loop_done.set()
            logger.info("Server stopped accepting connections")

    def start(self):
        """Bind and run the accept loop in a background thread."""
        if self.socket is None:
            self.bind()
        self._loop_thread = threading.Thread(target=self.serve_forever, name="accept-loop", daemon=True)
        self._loop_thread.start()
        return self._loop_thread

    def request_shutdown(self):
        """Ask the accept loop to stop; safe to call from a signal handler."""
        self._shutdown_event.set()

    def shutdown(self, timeout=5.0):
        """Stop the accept loop and wait for it to exit. In-flight handlers finish on their own."""
        self.request_shutdown()
        if self._loop_thread is not None:
            self._loop_thread.join(timeout)
        else:
            self._loop_done.wait(timeout)


def run_server(config):
    """
    Bootstrap directories, then serve until interrupted.

    Returns:
        int: Process exit code.
    """
    logger.info("Connection settings: %s", config.get_connection_info())
    logger.info("Storage settings: %s", config.get_storage_settings())

    try:
        setup_directories(config.base_dir, mode=config.dir_mode)
    except OSError as exc:
        logger.error("Directory setup failed for %s: %s", config.base_dir, exc)
        return 1

    try:
        server = FileTransferServer(config)
        server.bind()
    except (OSError, ValueError) as exc:
        logger.error("Failed to start server: %s", exc)
        return 1

    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGTERM, lambda signum, frame: server.request_shutdown())

    uptime = timed()
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Server interrupted via Ctrl+C. Stopping...")
        server.request_shutdown()
    finally:
        server.perf.record_response(operation="server_uptime", seconds=uptime())
        logger.info("Server stopped. Totals: %s", server.perf.summary())
        if config.metrics_file:
            try:
                count = server.perf.to_csv(config.metrics_file)
                logger.info("Wrote %d metric records to %s", count, config.metrics_file)
            except OSError as exc:
                logger.error("Failed to write metrics: %s", exc)

    return 0


#### Command line ####
def _add_logging_args(parser):
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    parser.add_argument("--log-file", default=None, help="Also append log lines to this file")


def build_parser():
    parser = argparse.ArgumentParser(
        prog="deptxfer-server",
        description="Department file transfer server",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Run the transfer server")
    serve.add_argument("--host", default=DEFAULT_SERVER_HOST,
                       help=f"Bind address (default: {DEFAULT_SERVER_HOST})")
    serve.add_argument("--port", type=int, default=DEFAULT_PORT,
                       help=f"TCP port (default: {DEFAULT_PORT})")
    serve.add_argument("--base-dir", default=DEFAULT_BASE_DIR,
                       help=f"Storage base directory (default: {DEFAULT_BASE_DIR})")
    serve.add_argument("--users", default=None,
                       help="JSON user table; default is the system user database")
    serve.add_argument("--credentials", default=None,
                       help="Credential file; enables password verification")
    serve.add_argument("--lock-scope", choices=StorageGuard.SCOPES, default=StorageGuard.SCOPE_GLOBAL,
                       help="Storage guard scope (default: global)")
    serve.add_argument("--timeout", type=float, default=DEFAULT_IO_TIMEOUT,
                       help=f"Per-read/write socket timeout in seconds, 0 disables (default: {DEFAULT_IO_TIMEOUT:g})")
    serve.add_argument("--transfer-timeout", type=float, default=DEFAULT_TRANSFER_TIMEOUT,
                       help=f"Deadline in seconds for a whole file payload, 0 disables "
                            f"(default: {DEFAULT_TRANSFER_TIMEOUT:g})")
    serve.add_argument("--chunk-size", type=int, default=CHUNK_SIZE,
                       help=f"Payload read size in bytes (default: {CHUNK_SIZE})")
    serve.add_argument("--backlog", type=int, default=DEFAULT_BACKLOG,
                       help=f"Pending connection limit (default: {DEFAULT_BACKLOG})")
    serve.add_argument("--metrics-file", default=None, help="Write CSV metrics here on shutdown")
    _add_logging_args(serve)

    setup = commands.add_parser("setup", help="Create department directories")
    setup.add_argument("--base-dir", default=DEFAULT_BASE_DIR,
                       help=f"Storage base directory (default: {DEFAULT_BASE_DIR})")
    setup.add_argument("--mode", default=oct(DEFAULT_DIR_MODE),
                       help=f"Octal permissions for department directories (default: {oct(DEFAULT_DIR_MODE)})")
    _add_logging_args(setup)

    passwd = commands.add_parser("set-password", help="Add or replace a user's password")
    passwd.add_argument("username")
    passwd.add_argument("--credentials", required=True, help="Credential file to update")
    _add_logging_args(passwd)

    return parser


def _set_password(args):
    pwd1 = getpass.getpass(f"New password for '{args.username}': ")
    pwd2 = getpass.getpass("Confirm password: ")
    if pwd1 != pwd2:
        print("Passwords do not match.")
        return 1

    store = CredentialStore(args.credentials)
    try:
        replaced = store.has_user(args.username)
        store.set_password(args.username, pwd1)
    except (ValueError, OSError) as exc:
        print(f"Could not set password: {exc}")
        return 1

    print(f"Password {'replaced' if replaced else 'set'} for '{args.username}'.")
    return 0


def _setup(args):
    try:
        mode = int(args.mode, 8)
    except ValueError:
        print(f"Invalid mode: {args.mode}")
        return 1

    try:
        paths = setup_directories(args.base_dir, mode=mode)
    except OSError as exc:
        print(f"Directory setup failed: {exc}")
        return 1

    for dept, path in paths.items():
        print(f"{dept.value}: {path}")
    return 0


def main(argv=None):
    """
    Entry point for the deptxfer-server command.

    Returns:
        int: Process exit code.
    """
    args = build_parser().parse_args(argv)
    try:
        configure_logging(args.log_level, args.log_file)
    except (ValueError, OSError) as exc:
        print(f"Invalid logging configuration: {exc}")
        return 2

    if args.command == "set-password":
        return _set_password(args)
    if args.command == "setup":
        return _setup(args)

    try:
        config = ServerConfig.from_args(args)
    except ValueError as exc:
        print(f"Invalid configuration: {exc}")
        return 2
    return run_server(config)


#### Run as script ####
if __name__ == "__main__":
    sys.exit(main())
