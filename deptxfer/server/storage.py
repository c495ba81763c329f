# deptxfer/server/storage.py
# Storage guard (mutual exclusion around file writes) and department directory bootstrap.

import logging
import os           # directory creation, permissions, group ownership
import threading    # guard locks
from contextlib import contextmanager

from deptxfer.common.constants import BASE_DIR_MODE, DEFAULT_DIR_MODE
from deptxfer.common.departments import Department, department_directory

logger = logging.getLogger(__name__)


#### Storage guard ####
class StorageGuard:
    """
    Mutual-exclusion region for the create -> write -> attribute sequence.

    One instance is shared by every connection handler and passed in
    explicitly. Two scopes are supported:

      - "global": a single lock serializes writes across all departments.
      - "department": one lock per department; uploads to different
        departments proceed in parallel, same-department writes (and so
        same-name races) stay serialized.
    """

    SCOPE_GLOBAL = "global"
    SCOPE_DEPARTMENT = "department"
    SCOPES = (SCOPE_GLOBAL, SCOPE_DEPARTMENT)

    def __init__(self, scope=SCOPE_GLOBAL):
        if scope not in self.SCOPES:
            raise ValueError(f"Unknown lock scope: {scope}")
        self.scope = scope
        self._global_lock = threading.Lock()
        self._department_locks = {dept: threading.Lock() for dept in Department}

    def lock_for(self, department):
        """Return the lock that covers writes into `department`."""
        if self.scope == self.SCOPE_GLOBAL:
            return self._global_lock
        return self._department_locks[department]

    @contextmanager
    def hold(self, department):
        """
        Hold the guard for `department` for the duration of the block.

        The lock is released on every exit path, including exceptions raised
        by a dropped connection mid-transfer.
        """
        lock = self.lock_for(department)
        logger.debug("[guard] Waiting for %s lock (%s)", self.scope, department.value)
        with lock:
            logger.debug("[guard] Acquired %s lock (%s)", self.scope, department.value)
            yield
        logger.debug("[guard] Released %s lock (%s)", self.scope, department.value)


#### Directory bootstrap ####
def system_group_id(name):
    """
    Look up a group id in the local group database.

    Returns:
        int | None: The gid, or None if the group does not exist or the
        platform has no group database.
    """
    try:
        import grp  # POSIX only
    except ImportError:
        return None

    try:
        return grp.getgrnam(name).gr_gid
    except KeyError:
        return None


def setup_directories(base_dir, mode=DEFAULT_DIR_MODE, group_lookup=system_group_id):
    """
    Create the base directory and one directory per department.

    Each department directory gets `mode` permissions and, when the
    department's group exists, that group as its group owner. Permission
    and ownership problems are logged as warnings; setup continues.

    This runs once before the accept loop starts and is not meant to run
    concurrently with uploads.

    Parameters:
        base_dir (str): Storage root (e.g. /tmp/fileserver).
        mode (int): Permission bits for department directories.
        group_lookup (callable): name -> gid | None.

    Returns:
        dict: Department -> absolute directory path.

    Raises:
        OSError: If a directory cannot be created at all.
    """
    base_dir = os.path.abspath(base_dir)
    if not os.path.isdir(base_dir):
        os.makedirs(base_dir, exist_ok=True)
        try:
            os.chmod(base_dir, BASE_DIR_MODE)
        except OSError as exc:
            logger.warning("[setup] Could not set permissions on %s: %s", base_dir, exc)

    paths = {}
    for dept in Department:
        path = department_directory(base_dir, dept)
        os.makedirs(path, exist_ok=True)

        try:
            os.chmod(path, mode)
        except OSError as exc:
            logger.warning("[setup] Could not set permissions on %s: %s", path, exc)

        gid = group_lookup(dept.group)
        if gid is None:
            logger.warning(
                "[setup] %s group not found, directory permissions may be incorrect",
                dept.group,
            )
        elif hasattr(os, "chown"):
            try:
                os.chown(path, -1, gid)
                logger.debug("[setup] %s owned by group %s (gid %d)", path, dept.group, gid)
            except OSError as exc:
                logger.warning("[setup] Could not set group of %s to %s: %s", path, dept.group, exc)

        paths[dept] = path

    logger.info("[setup] Directory setup complete under %s", base_dir)
    return paths
