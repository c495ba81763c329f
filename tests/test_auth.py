"""
Unit tests for deptxfer.server.auth

Runs authenticate() on one end of a socket pair with a static user table:
- department resolution (one group, both groups, none)
- unknown users and bad credentials
- the success reply and the resulting Session
"""

import os
import socket
import tempfile
import unittest
from dataclasses import FrozenInstanceError
from unittest.mock import Mock

from deptxfer.common.departments import Department
from deptxfer.common.wire import FramingError, MessageStream, PeerConnectionError
from deptxfer.server.auth import authenticate
from deptxfer.server.credentials import CredentialStore
from deptxfer.server.errors import BadCredentialError, NoDepartmentError, UnknownUserError
from deptxfer.server.identity import StaticIdentityProvider

USERS = {
    "mia": {"uid": 1001, "gid": 1001, "groups": ["Manufacturing"]},
    "dan": {"uid": 1002, "gid": 1002, "groups": ["Distribution"]},
    "bea": {"uid": 1003, "gid": 1003, "groups": ["Distribution", "Manufacturing"]},
    "nog": {"uid": 1004, "gid": 1004, "groups": ["wheel"]},
}


class AuthTestCase(unittest.TestCase):

    def setUp(self):
        self.server_sock, self.client_sock = socket.socketpair()
        self.server_sock.settimeout(5)
        self.client_sock.settimeout(5)
        self.stream = MessageStream(self.server_sock)
        self.provider = StaticIdentityProvider(USERS)

    def tearDown(self):
        self.server_sock.close()
        self.client_sock.close()

    def _send(self, *lines):
        self.client_sock.sendall("".join(line + "\n" for line in lines).encode())

    def _reply(self):
        return MessageStream(self.client_sock).recv_line(1024)


class TestDepartmentResolution(AuthTestCase):

    def test_manufacturing_user(self):
        self._send("mia", "pw")
        session = authenticate(self.stream, self.provider, peer=("127.0.0.1", 5000))
        self.assertIs(session.department, Department.MANUFACTURING)
        self.assertEqual((session.username, session.uid, session.gid), ("mia", 1001, 1001))
        self.assertEqual(session.peer, ("127.0.0.1", 5000))
        self.assertEqual(self._reply(), "Authentication successful. Department: Manufacturing")

    def test_distribution_user(self):
        self._send("dan", "pw")
        session = authenticate(self.stream, self.provider)
        self.assertIs(session.department, Department.DISTRIBUTION)
        self.assertEqual(self._reply(), "Authentication successful. Department: Distribution")

    def test_member_of_both_gets_manufacturing(self):
        self._send("bea", "pw")
        session = authenticate(self.stream, self.provider)
        self.assertIs(session.department, Department.MANUFACTURING)

    def test_member_of_neither(self):
        self._send("nog", "pw")
        with self.assertRaises(NoDepartmentError) as ctx:
            authenticate(self.stream, self.provider)
        self.assertEqual(ctx.exception.reason, "User not in required groups")

    def test_session_is_immutable(self):
        self._send("mia", "pw")
        session = authenticate(self.stream, self.provider)
        with self.assertRaises(FrozenInstanceError):
            session.department = Department.DISTRIBUTION


class TestRejections(AuthTestCase):

    def test_unknown_user(self):
        self._send("ghost", "pw")
        with self.assertRaises(UnknownUserError) as ctx:
            authenticate(self.stream, self.provider)
        self.assertEqual(ctx.exception.reason, "User not found")

    def test_no_reply_is_sent_on_failure(self):
        """authenticate() only raises; the connection handler owns the error reply."""
        self._send("ghost", "pw")
        with self.assertRaises(UnknownUserError):
            authenticate(self.stream, self.provider)
        self.client_sock.settimeout(0.05)
        with self.assertRaises(socket.timeout):
            self.client_sock.recv(100)

    def test_credential_checker_rejects(self):
        checker = Mock()
        checker.check.return_value = False
        self._send("mia", "wrong")
        with self.assertRaises(BadCredentialError) as ctx:
            authenticate(self.stream, self.provider, checker)
        self.assertEqual(ctx.exception.reason, "Invalid credentials")
        checker.check.assert_called_once_with("mia", "wrong")

    def test_credential_checked_before_department(self):
        """A wrong password is reported as such even for a user without a department."""
        checker = Mock()
        checker.check.return_value = False
        self._send("nog", "wrong")
        with self.assertRaises(BadCredentialError):
            authenticate(self.stream, self.provider, checker)

    def test_default_accepts_any_password(self):
        self._send("dan", "")
        session = authenticate(self.stream, self.provider)
        self.assertEqual(session.username, "dan")

    def test_credential_store(self):
        with tempfile.TemporaryDirectory() as tmp:
            store = CredentialStore(os.path.join(tmp, "creds.json"), iterations=1000)
            store.set_password("dan", "letmein")

            self._send("dan", "letmein")
            self.assertIs(authenticate(self.stream, self.provider, store).department, Department.DISTRIBUTION)

            self._send("dan", "nope")
            with self.assertRaises(BadCredentialError):
                authenticate(self.stream, self.provider, store)

    def test_username_too_long(self):
        self._send("u" * 32, "pw")
        with self.assertRaises(FramingError):
            authenticate(self.stream, self.provider)

    def test_disconnect_before_password(self):
        self.client_sock.sendall(b"mia\n")
        self.client_sock.shutdown(socket.SHUT_WR)
        with self.assertRaises(PeerConnectionError):
            authenticate(self.stream, self.provider)


if __name__ == "__main__":
    unittest.main()
