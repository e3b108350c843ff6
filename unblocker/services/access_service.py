"""Проверка доступа пользователя к хосту.

Доступ есть, если пользователь администратор, либо у него (или у его
родительского пользователя) есть активное право на хост напрямую или
через хостинг, размещённый на этом хосте.
"""

from __future__ import annotations

from typing import List, Optional

from ..extensions import db
from ..models import Hosting, User, UserHostingPermission, UserHostPermission


def _effective_user_ids(user: User) -> List[int]:
    ids = [user.id]
    if user.parent_user_id:
        ids.append(user.parent_user_id)
    return ids


def has_access_to_host(user: Optional[User], host_id: Optional[int]) -> bool:
    if user is None or host_id is None:
        return False
    if not user.is_active:
        return False
    if user.is_admin:
        return True

    ids = _effective_user_ids(user)
    direct = (
        db.session.query(UserHostPermission.id)
        .filter(
            UserHostPermission.user_id.in_(ids),
            UserHostPermission.host_id == host_id,
            UserHostPermission.is_active.is_(True),
        )
        .first()
    )
    if direct is not None:
        return True

    via_hosting = (
        db.session.query(UserHostingPermission.id)
        .join(Hosting, Hosting.id == UserHostingPermission.hosting_id)
        .filter(
            UserHostingPermission.user_id.in_(ids),
            UserHostingPermission.is_active.is_(True),
            Hosting.host_id == host_id,
        )
        .first()
    )
    return via_hosting is not None

