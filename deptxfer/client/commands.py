# deptxfer/client/commands.py
# Client session: connect, authenticate, and upload one file to a department.

import logging
import os           # local file paths and sizes
import socket       # TCP client socket

from deptxfer.analysis.performance_eval import PerfRecorder, timed   # client-side metrics
from deptxfer.common.constants import (
    AUTH_OK_PREFIX,
    CHUNK_SIZE,
    DEFAULT_CLIENT_HOST,
    DEFAULT_PORT,
    ENC,
    MAX_CREDENTIAL_BYTES,
    MAX_DEPARTMENT_BYTES,
    MAX_FILE_SIZE,
    MAX_PATH_BYTES,
    MAX_USERNAME_BYTES,
    TRANSFER_OK_PREFIX,
)
from deptxfer.common.wire import MAX_REPLY_BYTES, MessageStream, WireError

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 10.0
REPLY_TIMEOUT = 60.0


class ClientError(Exception):
    """A client-side precondition failed before anything was sent."""


def _check_field(value, limit, what):
    if len(value.encode(ENC)) > limit:
        raise ClientError(f"{what} must be at most {limit} bytes")
    if "\n" in value or "\r" in value:
        raise ClientError(f"{what} must not contain line breaks")


#### Client session ####
class TransferClient:
    """
    One connection to the transfer server.

    The server accepts a single upload per connection: connect(),
    authenticate(), upload(), then close().

    Tracks:
      - Server address (host, port)
      - Connection and authentication state
      - Department assigned by the server
      - Client-side performance metrics
    """

    def __init__(self, host=DEFAULT_CLIENT_HOST, port=DEFAULT_PORT, timeout=REPLY_TIMEOUT):
        self.addr = (host, port)
        self.timeout = timeout
        self.stream = None
        self.connected = False
        self.username = None
        self.department = None
        self.authenticated = False
        self.perf = PerfRecorder()

    #### Connection Lifecycle ####
    def connect(self):
        """
        Open a TCP connection to the configured server address.

        Returns:
            bool: True on success, False on failure.
        """
        try:
            conn = socket.create_connection(self.addr, timeout=CONNECT_TIMEOUT)
        except ConnectionRefusedError:
            logger.error("Connection refused. No server listening at %s:%s", *self.addr)
            return False
        except OSError as exc:
            logger.error("Connection to %s:%s failed: %s", self.addr[0], self.addr[1], exc)
            return False

        conn.settimeout(self.timeout)
        self.stream = MessageStream(conn)
        self.connected = True
        logger.info("Connected to %s:%s", *self.addr)
        return True

    def close(self):
        """Close the socket and reset session state."""
        if self.stream is not None:
            self.stream.close(linger=0)
        self.stream = None
        self.connected = False
        self.authenticated = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    #### Authentication ####
    def authenticate(self, username, password):
        """
        Send the username and password and read the server's verdict.

        Returns:
            tuple: (ok: bool, message: str). On success the department named
            by the server is stored in self.department.

        Raises:
            ClientError: Not connected, or a field breaks the protocol limits.
        """
        if not self.connected:
            raise ClientError("Not connected")
        _check_field(username, MAX_USERNAME_BYTES, "Username")
        _check_field(password, MAX_CREDENTIAL_BYTES, "Password")

        timer = timed()
        try:
            self.stream.send_line(username)
            self.stream.send_line(password)
            reply = self.stream.recv_line(MAX_REPLY_BYTES, "Reply")
        except WireError as exc:
            self.perf.record_response(operation="auth", seconds=timer(), outcome=type(exc).__name__,
                                      source="client")
            return False, f"Connection error: {exc.reason}"

        ok = reply.startswith(AUTH_OK_PREFIX)
        self.perf.record_response(operation="auth", seconds=timer(), outcome="ok" if ok else "rejected",
                                  source="client")
        if ok:
            self.username = username
            self.department = reply.rsplit(":", 1)[-1].strip()
            self.authenticated = True
        return ok, reply

    #### Upload ####
    def upload(self, local_path, department, remote_path=None, progress=None):
        """
        Stream one local file to a department.

        Parameters:
            local_path (str): File to send.
            department (str): Department selector, e.g. "Manufacturing".
            remote_path (str | None): Declared destination; the server keeps
                only its base name. Defaults to local_path.
            progress (callable | None): Called as progress(sent, total) after
                each chunk is sent.

        Returns:
            tuple: (ok: bool, message: str) where message is the server reply.

        Raises:
            ClientError: Not authenticated, the file is missing or too large,
                or a field breaks the protocol limits.
        """
        if not self.authenticated:
            raise ClientError("Not authenticated")
        if not os.path.isfile(local_path):
            raise ClientError(f"Local file '{local_path}' not found")

        declared = remote_path if remote_path is not None else local_path
        _check_field(department, MAX_DEPARTMENT_BYTES, "Department")
        _check_field(declared, MAX_PATH_BYTES, "File path")

        size = os.path.getsize(local_path)
        if size > MAX_FILE_SIZE:
            raise ClientError(f"File is larger than {MAX_FILE_SIZE} bytes")

        timer = timed()
        sent = 0
        try:
            self.stream.send_line(department)
            self.stream.send_line(declared)
            self.stream.send_length(size)
            with open(local_path, "rb") as f:
                while True:
                    chunk = f.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    self.stream.send_bytes(chunk)
                    sent += len(chunk)
                    if progress is not None:
                        progress(sent, size)
            reply = self.stream.recv_line(MAX_REPLY_BYTES, "Reply")
        except WireError as exc:
            # The server may have rejected the request and closed early;
            # its reply, if any, is still worth reading.
            reply = self._read_late_reply()
            if reply is None:
                self.perf.record_transfer(operation="upload", bytes_count=sent, seconds=timer(),
                                          outcome=type(exc).__name__, source="client")
                return False, f"Connection error: {exc.reason}"

        ok = reply.startswith(TRANSFER_OK_PREFIX)
        self.perf.record_transfer(operation="upload", bytes_count=sent, seconds=timer(),
                                  outcome="ok" if ok else "rejected", source="client",
                                  meta={"filename": os.path.basename(local_path), "department": department})
        return ok, reply

    def _read_late_reply(self):
        try:
            return self.stream.recv_line(MAX_REPLY_BYTES, "Reply")
        except WireError:
            return None


def upload_file(host, port, username, password, department, local_path, remote_path=None):
    """
    Connect, authenticate and upload in one call.

    Returns:
        tuple: (ok: bool, message: str) with the last server reply or an
        error description.
    """
    client = TransferClient(host, port)
    if not client.connect():
        return False, f"Could not connect to {host}:{port}"

    with client:
        ok, message = client.authenticate(username, password)
        if not ok:
            return False, message
        return client.upload(local_path, department, remote_path)
