# deptxfer/server/file_ops.py
# File-receive protocol: department check, destination naming, payload write, attribution.

import logging
import os           # storage paths, ownership change
import re           # path separator split
import time         # payload deadline
from dataclasses import dataclass

from deptxfer.common.constants import (
    ATTRIBUTION_SUFFIX,
    ENC,
    MAX_DEPARTMENT_BYTES,
    MAX_NAME_BYTES,
    MAX_PATH_BYTES,
    TRANSFER_OK,
)
from deptxfer.common.departments import Department, department_directory, parse_department
from deptxfer.common.wire import PeerConnectionError
from deptxfer.server.errors import (
    AuthorizationError,
    InvalidDepartmentError,
    InvalidFileNameError,
    StorageError,
    TransferError,
)

logger = logging.getLogger(__name__)

# Both separators count; a Windows client may send "C:\dir\file.txt".
_SEPARATORS = re.compile(r"[\\/]")


@dataclass(frozen=True)
class TransferResult:
    """Outcome of one successful upload."""
    filename: str
    department: Department
    path: str
    attribution_path: str
    bytes_written: int
    owner_applied: bool


#### Path helpers ####
def extract_basename(declared_path):
    """
    Keep only the final component of a client-declared path.

    Any directory components are discarded, so "../../etc/passwd" becomes
    "passwd" and the file always lands directly in the department directory.

    Raises:
        InvalidFileNameError: Nothing usable is left ("", ".", ".."), the
            name holds a NUL byte, it would collide with an attribution
            record, or its attribution record name would be too long.
    """
    name = _SEPARATORS.split(declared_path)[-1]
    if name in ("", ".", "..") or "\x00" in name or name.endswith(ATTRIBUTION_SUFFIX):
        raise InvalidFileNameError(declared_path)
    if len(name.encode(ENC)) + len(ATTRIBUTION_SUFFIX) > MAX_NAME_BYTES:
        raise InvalidFileNameError(declared_path)
    return name


def attribution_path_for(dest_path):
    """Sidecar path holding the uploader's username."""
    return dest_path + ATTRIBUTION_SUFFIX


def _confine(directory, filename):
    """
    Join `filename` onto `directory` and make sure the result stays inside it.

    Raises:
        InvalidFileNameError: If the joined path escapes the directory.
    """
    base = os.path.abspath(directory)
    target = os.path.abspath(os.path.join(base, filename))
    try:
        inside = os.path.commonpath([base, target]) == base and target != base
    except ValueError:
        inside = False
    if not inside:
        raise InvalidFileNameError(filename)
    return target


#### Receiver ####
class FileReceiver:
    """
    Runs the file-receive protocol for authenticated sessions.

    One instance is shared by all connection handlers; it holds no
    per-connection state. The storage guard is injected so tests can use
    their own.

    transfer_timeout bounds the whole payload read, and so how long one
    upload can hold the guard. None disables it.
    """

    def __init__(self, base_dir, guard, transfer_timeout=None):
        self.base_dir = os.path.abspath(base_dir)
        self.guard = guard
        self.transfer_timeout = transfer_timeout
        self.department_dirs = {dept: department_directory(self.base_dir, dept) for dept in Department}

    def resolve_destination(self, selector, declared_path):
        """
        Map a department selector and declared path to a destination file.

        Returns:
            tuple: (Department, filename, absolute destination path)

        Raises:
            InvalidFileNameError: No usable base name.
            InvalidDepartmentError: Selector has no department directory.
        """
        filename = extract_basename(declared_path)

        department = parse_department(selector)
        directory = self.department_dirs.get(department) if department else None
        if directory is None:
            raise InvalidDepartmentError(selector)

        return department, filename, _confine(directory, filename)

    def receive(self, stream, session):
        """
        Receive one file from an authenticated client.

        Protocol (after authentication):
            Client sends:
                <department>\\n
                <path>\\n
                <4-byte big-endian length>
                <length bytes of payload>

            Server replies:
                File '<name>' successfully transferred to <Dept> department\\n

        The department must equal the session's department. Only the base
        name of <path> is used. Everything from file creation through the
        attribution record runs under the storage guard.

        A payload that ends early leaves the partial file on disk and writes
        no attribution record.

        Parameters:
            stream (MessageStream): Framed connection.
            session (Session): Authenticated session.

        Returns:
            TransferResult: What was written and where.

        Raises:
            PeerConnectionError: Stream ended while reading a header message.
            FramingError: Header message too long or not valid text.
            AuthorizationError: Department differs from the session's.
            InvalidFileNameError, InvalidDepartmentError: Bad destination.
            TransferError: Payload shorter than declared.
            StorageError: File or attribution record could not be written.
        """
        selector = stream.recv_line(MAX_DEPARTMENT_BYTES, "Department")
        if selector != session.department.value:
            logger.info(
                "[upload] Access denied for '%s' (department %s) to '%s'",
                session.username, session.department.value, selector,
            )
            raise AuthorizationError(selector)

        declared_path = stream.recv_line(MAX_PATH_BYTES, "File path")
        department, filename, dest_path = self.resolve_destination(selector, declared_path)
        if filename != declared_path:
            logger.debug("[upload] Declared path '%s' stored as '%s'", declared_path, filename)

        length = stream.recv_length()
        logger.info(
            "[upload] Starting: '%s' (%d bytes) from '%s' -> %s",
            filename, length, session.username, dest_path,
        )

        with self.guard.hold(department):
            deadline = time.monotonic() + self.transfer_timeout if self.transfer_timeout else None
            written = self._write_payload(stream, dest_path, length, deadline)
            owner_applied, owner_path = self.finalize_transfer(dest_path, session)

        stream.send_line(TRANSFER_OK.format(name=filename, department=department.value))
        logger.info(
            "[upload] File '%s' transferred by '%s' to %s department (%d bytes)",
            filename, session.username, department.value, written,
        )

        return TransferResult(
            filename=filename,
            department=department,
            path=dest_path,
            attribution_path=owner_path,
            bytes_written=written,
            owner_applied=owner_applied,
        )

    #### Write phase (caller holds the guard) ####
    def _write_payload(self, stream, dest_path, length, deadline=None):
        """
        Create or truncate `dest_path` and fill it with exactly `length` bytes.

        `deadline` is a time.monotonic() value; the payload must be complete by then.

        Returns:
            int: Bytes written (always `length` on return).
        """
        received = 0
        try:
            with open(dest_path, "wb") as f:
                try:
                    for chunk in stream.iter_payload(length, deadline=deadline):
                        f.write(chunk)
                        received += len(chunk)
                except PeerConnectionError as exc:
                    logger.warning(
                        "[upload] Transfer interrupted after %d of %d bytes; partial file left at %s (%s)",
                        received, length, dest_path, exc.reason,
                    )
                    raise TransferError(received, length) from exc
        except OSError as exc:
            logger.error("[upload] Cannot create or write %s: %s", dest_path, exc)
            raise StorageError(f"Cannot create file: {exc.strerror or exc}") from exc

        return received

    def finalize_transfer(self, dest_path, session):
        """
        Attribute a freshly written file to its uploader.

        Two ordered sub-steps:
          1. Change the file owner to the session's uid. Best effort: a
             failure is logged as a warning and the transfer goes on.
          2. Write the attribution record (username bytes, nothing else).
             Required: a failure raises StorageError.

        Returns:
            tuple: (owner_applied: bool, attribution_path: str)
        """
        owner_applied = self._apply_ownership(dest_path, session)

        owner_path = attribution_path_for(dest_path)
        try:
            with open(owner_path, "wb") as f:
                f.write(session.username.encode(ENC))
        except OSError as exc:
            logger.error("[upload] Cannot write attribution record %s: %s", owner_path, exc)
            raise StorageError(f"Cannot write attribution record: {exc.strerror or exc}") from exc

        logger.debug("[upload] Created attribution record %s", owner_path)
        return owner_applied, owner_path

    def _apply_ownership(self, dest_path, session):
        """chown the file to the uploader; returns True on success."""
        if session.uid < 0:
            logger.debug("[upload] No numeric identity for '%s'; ownership unchanged", session.username)
            return False
        if not hasattr(os, "chown"):
            logger.warning("[upload] Ownership change not supported on this platform")
            return False

        try:
            os.chown(dest_path, session.uid, -1)
        except OSError as exc:
            logger.warning(
                "[upload] Could not set ownership of %s to '%s' (uid %d): %s",
                dest_path, session.username, session.uid, exc,
            )
            return False

        logger.debug("[upload] Ownership of %s set to '%s'", dest_path, session.username)
        return True
