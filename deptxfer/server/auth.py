# deptxfer/server/auth.py
# Authentication protocol: read identity and credential, resolve the user's department.

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from deptxfer.common.constants import AUTH_OK, MAX_CREDENTIAL_BYTES, MAX_USERNAME_BYTES
from deptxfer.common.departments import PRIORITY_ORDER, Department, department_for_groups
from deptxfer.server.credentials import AcceptAnyCredential, CredentialChecker
from deptxfer.server.errors import BadCredentialError, NoDepartmentError, UnknownUserError
from deptxfer.server.identity import IdentityProvider

logger = logging.getLogger(__name__)


#### Per-connection session state ####
@dataclass(frozen=True)
class Session:
    """
    Authenticated state bound to one connection.

    Frozen: the department cannot change once authentication succeeds.

    Tracks:
      - peer: client address
      - username: authenticated user
      - department: the single department this connection may write into
      - uid / gid: numeric identity used for file ownership
    """
    peer: Optional[Tuple]
    username: str
    department: Department
    uid: int
    gid: int


#### Protocol ####
def authenticate(stream, identity_provider: IdentityProvider,
                 credential_checker: Optional[CredentialChecker] = None, peer=None) -> Session:
    """
    Run the authentication protocol on a freshly accepted connection.

    Protocol:
        Client sends two lines:
            <username>\\n
            <password>\\n

        On success the server replies:
            Authentication successful. Department: <Dept>\\n

        On failure an AuthError is raised; the connection handler sends
            Authentication failed: <reason>\\n

    Department policy:
        - exactly one department group: that department
        - several department groups: the first in priority order
        - none: NoDepartmentError

    Parameters:
        stream (MessageStream): Framed connection.
        identity_provider (IdentityProvider): User and group lookup.
        credential_checker (CredentialChecker | None): Password policy.
            Defaults to AcceptAnyCredential (no verification).
        peer (tuple | None): Client address, for logging and the session.

    Returns:
        Session: Bound to the resolved department and numeric identity.

    Raises:
        PeerConnectionError: Stream ended before a message was complete.
        FramingError: A message was too long or not valid text.
        UnknownUserError, BadCredentialError, NoDepartmentError: Rejected.
    """
    username = stream.recv_line(MAX_USERNAME_BYTES, "Username")
    credential = stream.recv_line(MAX_CREDENTIAL_BYTES, "Password")
    logger.debug("[auth] %s: user '%s' attempting to authenticate", peer, username)

    record = identity_provider.lookup_user(username)
    if record is None:
        logger.info("[auth] %s: user '%s' not found", peer, username)
        raise UnknownUserError(username)

    checker = credential_checker or AcceptAnyCredential()
    if not checker.check(username, credential):
        logger.info("[auth] %s: invalid credentials for '%s'", peer, username)
        raise BadCredentialError(username)

    groups = identity_provider.group_memberships(username)
    department = department_for_groups(groups)
    if department is None:
        logger.info("[auth] %s: user '%s' is not in any department group", peer, username)
        raise NoDepartmentError(username)

    matched = [d.value for d in PRIORITY_ORDER if d.group in groups]
    if len(matched) > 1:
        logger.info(
            "[auth] User '%s' is in %s; defaulting to %s",
            username, ", ".join(matched), department.value,
        )

    session = Session(
        peer=peer,
        username=username,
        department=department,
        uid=record.uid,
        gid=record.gid,
    )

    stream.send_line(AUTH_OK.format(department=department.value))
    return session
