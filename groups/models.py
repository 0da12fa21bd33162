"""
groups/models.py -- Domain dataclasses for groups and memberships.

These are pure data containers. Hierarchy walking and membership queries live
in groups/store.py; the two-factor decision that reads these flags lives in
auth/policy.py.
"""

from dataclasses import dataclass
from typing import Optional

# Membership access levels.
GUEST = 10
REPORTER = 20
DEVELOPER = 30
MAINTAINER = 40
OWNER = 50

ACCESS_LEVELS = {"guest": GUEST, "reporter": REPORTER, "developer": DEVELOPER, "maintainer": MAINTAINER, "owner": OWNER}


@dataclass
class Group:
    """A group of users, optionally nested under a parent group.

    require_two_factor_authentication forces every member (and every member of
    a subgroup) to enroll in 2FA. two_factor_grace_period is how many hours a
    member may postpone enrollment.

    full_name is filled in by the store ("Parent / Child"); id is None before
    the record is written to the database.
    """

    name: str
    path: str
    parent_id: Optional[int] = None
    require_two_factor_authentication: bool = False
    two_factor_grace_period: int = 48
    id: Optional[int] = None
    full_name: str = ""
    created_at: str = ""


@dataclass
class GroupMember:
    group_id: int
    user_id: int
    access_level: int = DEVELOPER
    id: Optional[int] = None
    created_at: str = ""
