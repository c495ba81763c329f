"""
Unit tests for deptxfer.server.file_ops

Drives FileReceiver.receive() over a socket pair into a temporary base
directory:
- successful uploads and their attribution records
- department mismatch and invalid destinations
- path components stripped from declared names
- short payloads, ownership failures and attribution failures
"""

import os
import socket
import struct
import tempfile
import threading
import time
import unittest
from unittest.mock import patch

from deptxfer.common.departments import Department
from deptxfer.common.wire import MessageStream
from deptxfer.server.auth import Session
from deptxfer.server.errors import (
    AuthorizationError,
    InvalidDepartmentError,
    InvalidFileNameError,
    StorageError,
    TransferError,
)
from deptxfer.server.file_ops import FileReceiver, extract_basename
from deptxfer.server.storage import StorageGuard, setup_directories


def _session(username="mia", department=Department.MANUFACTURING, uid=-1):
    return Session(peer=("127.0.0.1", 40000), username=username, department=department, uid=uid, gid=-1)


class TestExtractBasename(unittest.TestCase):

    def test_plain_name(self):
        self.assertEqual(extract_basename("report.txt"), "report.txt")

    def test_directories_are_dropped(self):
        self.assertEqual(extract_basename("/home/mia/report.txt"), "report.txt")
        self.assertEqual(extract_basename("../../etc/passwd"), "passwd")

    def test_backslash_is_a_separator(self):
        self.assertEqual(extract_basename("C:\\Users\\mia\\plan.docx"), "plan.docx")

    def test_name_length_leaves_room_for_attribution_record(self):
        """A stored name plus ".owner" must fit in one 255-byte path component."""
        self.assertEqual(extract_basename("n" * 249), "n" * 249)
        for length in (250, 252, 255):
            with self.subTest(length=length):
                with self.assertRaises(InvalidFileNameError):
                    extract_basename("dir/" + "n" * length)

    def test_name_length_counts_bytes(self):
        # 125 two-byte characters = 250 bytes
        with self.assertRaises(InvalidFileNameError):
            extract_basename("\u00e9" * 125)

    def test_rejected_names(self):
        for declared in ("", "dir/", ".", "..", "a/..", "bad\x00name", "report.txt.owner"):
            with self.subTest(declared=declared):
                with self.assertRaises(InvalidFileNameError) as ctx:
                    extract_basename(declared)
                self.assertEqual(ctx.exception.reason, "Invalid file name")


class ReceiverTestCase(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.base_dir = self.tmpdir.name
        setup_directories(self.base_dir, group_lookup=lambda name: None)
        self.receiver = FileReceiver(self.base_dir, StorageGuard())

        self.server_sock, self.client_sock = socket.socketpair()
        self.server_sock.settimeout(5)
        self.client_sock.settimeout(5)
        self.stream = MessageStream(self.server_sock)

    def tearDown(self):
        self.server_sock.close()
        self.client_sock.close()
        self.tmpdir.cleanup()

    def _dept_dir(self, department=Department.MANUFACTURING):
        return os.path.join(self.base_dir, department.value)

    def _send_request(self, department, path, payload, declared_length=None, close=False):
        length = len(payload) if declared_length is None else declared_length
        self.client_sock.sendall(
            f"{department}\n{path}\n".encode() + struct.pack("!I", length) + payload
        )
        if close:
            self.client_sock.shutdown(socket.SHUT_WR)

    def _reply(self):
        return MessageStream(self.client_sock).recv_line(1024)


class TestReceive(ReceiverTestCase):

    def test_upload_writes_file_and_attribution(self):
        self._send_request("Manufacturing", "report.txt", b"quarterly numbers")
        result = self.receiver.receive(self.stream, _session())

        dest = os.path.join(self._dept_dir(), "report.txt")
        self.assertEqual(result.path, dest)
        self.assertEqual(result.bytes_written, 17)
        with open(dest, "rb") as f:
            self.assertEqual(f.read(), b"quarterly numbers")
        with open(dest + ".owner", "rb") as f:
            self.assertEqual(f.read(), b"mia")
        self.assertEqual(
            self._reply(),
            "File 'report.txt' successfully transferred to Manufacturing department",
        )

    def test_empty_file(self):
        self._send_request("Manufacturing", "empty.bin", b"")
        result = self.receiver.receive(self.stream, _session())
        self.assertEqual(result.bytes_written, 0)
        self.assertEqual(os.path.getsize(result.path), 0)
        self.assertTrue(os.path.exists(result.attribution_path))

    def test_existing_file_is_replaced(self):
        dest = os.path.join(self._dept_dir(), "report.txt")
        with open(dest, "wb") as f:
            f.write(b"an older and much longer version of the report")

        self._send_request("Manufacturing", "report.txt", b"v2")
        self.receiver.receive(self.stream, _session())
        with open(dest, "rb") as f:
            self.assertEqual(f.read(), b"v2")

    def test_traversal_lands_in_department_directory(self):
        self._send_request("Manufacturing", "../../etc/passwd", b"root:x:0:0")
        result = self.receiver.receive(self.stream, _session())

        self.assertEqual(result.filename, "passwd")
        self.assertEqual(result.path, os.path.join(self._dept_dir(), "passwd"))
        self.assertIn("File 'passwd' successfully transferred", self._reply())

    def test_distribution_upload(self):
        session = _session("dan", Department.DISTRIBUTION)
        self._send_request("Distribution", "manifest.csv", b"a,b,c\n")
        result = self.receiver.receive(self.stream, session)
        self.assertEqual(os.path.dirname(result.path), self._dept_dir(Department.DISTRIBUTION))


class TestReceiveRejections(ReceiverTestCase):

    def _files_in(self, department):
        return os.listdir(self._dept_dir(department))

    def test_department_mismatch_creates_nothing(self):
        self._send_request("Distribution", "report.txt", b"data")
        with self.assertRaises(AuthorizationError) as ctx:
            self.receiver.receive(self.stream, _session())
        self.assertEqual(ctx.exception.reason, "You don't have access to the Distribution department")
        self.assertEqual(self._files_in(Department.DISTRIBUTION), [])
        self.assertEqual(self._files_in(Department.MANUFACTURING), [])

    def test_unknown_department_is_an_authorization_error(self):
        """Any selector other than the session's own department is refused first."""
        self._send_request("Sales", "report.txt", b"data")
        with self.assertRaises(AuthorizationError):
            self.receiver.receive(self.stream, _session())

    def test_invalid_file_name(self):
        self._send_request("Manufacturing", "uploads/", b"data")
        with self.assertRaises(InvalidFileNameError):
            self.receiver.receive(self.stream, _session())
        self.assertEqual(self._files_in(Department.MANUFACTURING), [])

    def test_overlong_name_creates_nothing(self):
        self._send_request("Manufacturing", "n" * 252, b"abc")
        with self.assertRaises(InvalidFileNameError):
            self.receiver.receive(self.stream, _session())
        self.assertEqual(self._files_in(Department.MANUFACTURING), [])

    def test_short_payload_leaves_partial_file_without_attribution(self):
        self._send_request("Manufacturing", "big.bin", b"only-part", declared_length=1000, close=True)
        with self.assertRaises(TransferError) as ctx:
            self.receiver.receive(self.stream, _session())

        self.assertEqual(ctx.exception.received, 9)
        self.assertEqual(ctx.exception.expected, 1000)
        dest = os.path.join(self._dept_dir(), "big.bin")
        with open(dest, "rb") as f:
            self.assertEqual(f.read(), b"only-part")
        self.assertFalse(os.path.exists(dest + ".owner"))

    def test_guard_released_after_failure(self):
        self._send_request("Manufacturing", "big.bin", b"x", declared_length=10, close=True)
        with self.assertRaises(TransferError):
            self.receiver.receive(self.stream, _session())
        self.assertFalse(self.receiver.guard.lock_for(Department.MANUFACTURING).locked())

    def test_missing_department_directory(self):
        os.rmdir(self._dept_dir())
        self._send_request("Manufacturing", "report.txt", b"data")
        with self.assertRaises(StorageError) as ctx:
            self.receiver.receive(self.stream, _session())
        self.assertTrue(ctx.exception.reason.startswith("Cannot create file"))


class TestTransferDeadline(ReceiverTestCase):

    def _trickle(self, count=100, interval=0.05):
        """Send one payload byte at a time, each well inside the per-read timeout."""
        def run():
            for _ in range(count):
                try:
                    self.client_sock.sendall(b"x")
                except OSError:
                    return
                time.sleep(interval)

        thread = threading.Thread(target=run, daemon=True)
        thread.start()
        return thread

    def test_slow_payload_releases_guard_at_deadline(self):
        receiver = FileReceiver(self.base_dir, StorageGuard(), transfer_timeout=0.3)
        self.client_sock.sendall(b"Manufacturing\nslow.bin\n" + struct.pack("!I", 1000))
        self._trickle()

        start = time.monotonic()
        with self.assertRaises(TransferError):
            receiver.receive(self.stream, _session())
        elapsed = time.monotonic() - start

        self.assertLess(elapsed, 2.0)
        self.assertFalse(receiver.guard.lock_for(Department.MANUFACTURING).locked())
        self.assertFalse(os.path.exists(os.path.join(self._dept_dir(), "slow.bin.owner")))

    def test_per_read_timeout_restored_after_payload(self):
        receiver = FileReceiver(self.base_dir, StorageGuard(), transfer_timeout=30)
        self._send_request("Manufacturing", "fast.bin", b"quick")
        receiver.receive(self.stream, _session())
        self.assertEqual(self.server_sock.gettimeout(), 5)


class TestFinalizeTransfer(ReceiverTestCase):

    def _dest(self, content=b"data"):
        dest = os.path.join(self._dept_dir(), "report.txt")
        with open(dest, "wb") as f:
            f.write(content)
        return dest

    def test_ownership_failure_is_not_fatal(self):
        dest = self._dest()
        with patch("deptxfer.server.file_ops.os.chown", side_effect=PermissionError(1, "Operation not permitted")):
            owner_applied, owner_path = self.receiver.finalize_transfer(dest, _session(uid=4242))
        self.assertFalse(owner_applied)
        with open(owner_path, "rb") as f:
            self.assertEqual(f.read(), b"mia")

    def test_ownership_applied_with_uid(self):
        dest = self._dest()
        with patch("deptxfer.server.file_ops.os.chown") as chown:
            owner_applied, _ = self.receiver.finalize_transfer(dest, _session(uid=4242))
        self.assertTrue(owner_applied)
        chown.assert_called_once_with(dest, 4242, -1)

    def test_no_uid_skips_ownership(self):
        dest = self._dest()
        with patch("deptxfer.server.file_ops.os.chown") as chown:
            owner_applied, _ = self.receiver.finalize_transfer(dest, _session(uid=-1))
        self.assertFalse(owner_applied)
        chown.assert_not_called()

    def test_attribution_failure_is_fatal(self):
        dest = self._dest()
        os.mkdir(dest + ".owner")  # a directory where the record should go
        with self.assertRaises(StorageError) as ctx:
            self.receiver.finalize_transfer(dest, _session())
        self.assertTrue(ctx.exception.reason.startswith("Cannot write attribution record"))


if __name__ == "__main__":
    unittest.main()
