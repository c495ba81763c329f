# deptxfer/common/departments.py
# Fixed department enumeration and its mapping to directories and groups.

import os
from enum import Enum
from typing import Iterable, Optional


class Department(Enum):
    """
    Destination departments, declared in priority order.

    A user that belongs to several department groups is assigned the first
    one listed here.
    """
    MANUFACTURING = "Manufacturing"
    DISTRIBUTION = "Distribution"

    @property
    def group(self) -> str:
        """Authorization group that grants access to this department."""
        return self.value

    @property
    def directory_name(self) -> str:
        """Directory name under the storage base directory."""
        return self.value


# Iteration order of an Enum is declaration order.
PRIORITY_ORDER = tuple(Department)


def parse_department(selector: str) -> Optional[Department]:
    """
    Map a selector string to a Department.

    Matching is exact (case-sensitive) on the department name.

    Returns:
        Department | None: Matching department, or None if unknown.
    """
    for dept in Department:
        if dept.value == selector:
            return dept
    return None


def department_for_groups(groups: Iterable[str]) -> Optional[Department]:
    """
    Pick the department for a set of group memberships.

    Exactly one mapped group selects that department. Several mapped groups
    select the highest-priority one. No mapped group yields None.
    """
    member_of = set(groups)
    for dept in PRIORITY_ORDER:
        if dept.group in member_of:
            return dept
    return None


def department_directory(base_dir: str, department: Department) -> str:
    """Absolute path of a department's storage directory."""
    return os.path.abspath(os.path.join(base_dir, department.directory_name))
