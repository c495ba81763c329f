# deptxfer/server/identity.py
# Identity providers: resolve a username to a user record and its group memberships.

import json         # static user table file
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from deptxfer.common.constants import ENC
from deptxfer.common.departments import Department

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserRecord:
    """A resolved user: name plus numeric uid and primary gid."""
    username: str
    uid: int
    gid: int


class IdentityProvider:
    """
    Lookup interface used by the authentication protocol.

    Implementations answer two questions about a username: does it exist
    (and with which numeric identity), and which groups is it a member of.
    """

    def lookup_user(self, username: str) -> Optional[UserRecord]:
        raise NotImplementedError

    def group_memberships(self, username: str) -> List[str]:
        raise NotImplementedError


class SystemIdentityProvider(IdentityProvider):
    """
    Identity provider backed by the local POSIX user and group databases.

    A user is considered a member of a group when it appears in the group's
    member list, or when the group is the user's primary group. Only the
    department groups are examined.
    """

    def __init__(self, groups: Optional[Iterable[str]] = None):
        self.groups = tuple(groups) if groups is not None else tuple(d.group for d in Department)

    def lookup_user(self, username):
        import pwd  # POSIX only

        try:
            entry = pwd.getpwnam(username)
        except (KeyError, ValueError):
            # ValueError: embedded NUL in the name
            return None
        return UserRecord(username=username, uid=entry.pw_uid, gid=entry.pw_gid)

    def group_memberships(self, username):
        import grp  # POSIX only

        record = self.lookup_user(username)
        primary_gid = record.gid if record else None

        memberships = []
        for name in self.groups:
            try:
                group = grp.getgrnam(name)
            except KeyError:
                logger.debug("[identity] Group '%s' not found", name)
                continue

            if username in group.gr_mem or primary_gid == group.gr_gid:
                memberships.append(name)

        logger.debug("[identity] User '%s' groups: %s", username, memberships)
        return memberships


class StaticIdentityProvider(IdentityProvider):
    """
    In-memory identity provider.

    Useful for tests and for hosts where department users are not system
    accounts. The table maps username -> {"uid": int, "gid": int, "groups": [...]}.
    """

    def __init__(self, users: Optional[Dict[str, dict]] = None):
        self._users: Dict[str, dict] = {}
        for username, entry in (users or {}).items():
            self.add_user(
                username,
                uid=entry.get("uid", -1),
                gid=entry.get("gid", -1),
                groups=entry.get("groups", ()),
            )

    @classmethod
    def from_json(cls, path):
        """
        Load a user table from a JSON file.

        Layout:
            {"users": {"alice": {"uid": 1001, "gid": 1001, "groups": ["Manufacturing"]}}}

        Raises:
            ValueError: If the file does not contain a "users" object.
        """
        with open(path, "r", encoding=ENC) as f:
            data = json.load(f)

        users = data.get("users") if isinstance(data, dict) else None
        if not isinstance(users, dict):
            raise ValueError(f"{path}: expected a JSON object with a 'users' mapping")

        logger.info("[identity] Loaded %d users from %s", len(users), path)
        return cls(users)

    def add_user(self, username, uid=-1, gid=-1, groups=()):
        self._users[username] = {"uid": int(uid), "gid": int(gid), "groups": list(groups)}

    def lookup_user(self, username):
        entry = self._users.get(username)
        if entry is None:
            return None
        return UserRecord(username=username, uid=entry["uid"], gid=entry["gid"])

    def group_memberships(self, username):
        entry = self._users.get(username)
        return list(entry["groups"]) if entry else []
