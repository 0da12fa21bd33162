"""
api/routes/v1/groups.py -- Group and membership administration.

Routes (all admin only):
  POST   /api/v1/groups                            -- create group (optionally nested)
  GET    /api/v1/groups                            -- list groups
  GET    /api/v1/groups/{id}                       -- group detail
  PATCH  /api/v1/groups/{id}                       -- rename / change 2FA requirement
  GET    /api/v1/groups/{id}/members               -- list members
  POST   /api/v1/groups/{id}/members               -- add or update a member
  DELETE /api/v1/groups/{id}/members/{user_id}     -- remove a member
  GET    /api/v1/users/{user_id}/groups              -- groups a user belongs to

Turning on require_two_factor_authentication affects every member of the group
and of its subgroups on their next request; nothing is pushed to sessions.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from sqlalchemy.exc import IntegrityError

from api.models import GroupCreate, GroupMemberAdd, GroupMemberResponse, GroupPatch, GroupResponse
from auth.dependencies import require_admin
from auth.models import User
from groups.models import ACCESS_LEVELS, Group
from groups.store import GroupStore

logger = logging.getLogger("gatehouse.api.groups")

router = APIRouter()


def _not_found(what: str) -> HTTPException:
    return HTTPException(
        status_code=404,
        detail={"code": "not_found", "message": f"{what} not found."},
    )


def _path_taken() -> HTTPException:
    return HTTPException(
        status_code=409,
        detail={"code": "conflict", "message": "A group with that path already exists."},
    )


def _to_response(group: Group) -> GroupResponse:
    return GroupResponse(
        id=group.id,
        name=group.name,
        path=group.path,
        full_name=group.full_name,
        parent_id=group.parent_id,
        require_two_factor_authentication=group.require_two_factor_authentication,
        two_factor_grace_period=group.two_factor_grace_period,
    )


@router.post("/groups", response_model=GroupResponse, status_code=201)
def create_group(
    request: Request,
    body: GroupCreate,
    current_user: User = Depends(require_admin),
) -> GroupResponse:
    store: GroupStore = request.app.state.group_store
    if store.get_by_path(body.path) is not None:
        raise _path_taken()
    try:
        group_id = store.create_group(Group(**body.model_dump()))
    except ValueError as exc:
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_parent", "message": str(exc)},
        ) from exc
    except IntegrityError as exc:
        raise _path_taken() from exc
    logger.info("Admin %r created group %r", current_user.username, body.path)
    return _to_response(store.get_group(group_id))


@router.get("/groups", response_model=list[GroupResponse])
def list_groups(request: Request, current_user: User = Depends(require_admin)) -> list[GroupResponse]:
    store: GroupStore = request.app.state.group_store
    return [_to_response(g) for g in store.list_groups()]


@router.get("/groups/{group_id}", response_model=GroupResponse)
def get_group(request: Request, group_id: int, current_user: User = Depends(require_admin)) -> GroupResponse:
    group = request.app.state.group_store.get_group(group_id)
    if group is None:
        raise _not_found("Group")
    return _to_response(group)


@router.patch("/groups/{group_id}", response_model=GroupResponse)
def update_group(
    request: Request,
    group_id: int,
    body: GroupPatch,
    current_user: User = Depends(require_admin),
) -> GroupResponse:
    store: GroupStore = request.app.state.group_store
    if store.get_group(group_id) is None:
        raise _not_found("Group")
    store.update_group(group_id, **body.model_dump(exclude_none=True))
    return _to_response(store.get_group(group_id))


@router.get("/groups/{group_id}/members", response_model=list[GroupMemberResponse])
def list_members(
    request: Request,
    group_id: int,
    current_user: User = Depends(require_admin),
) -> list[GroupMemberResponse]:
    store: GroupStore = request.app.state.group_store
    if store.get_group(group_id) is None:
        raise _not_found("Group")
    return [GroupMemberResponse(user_id=m.user_id, access_level=m.access_level) for m in store.list_members(group_id)]


@router.post("/groups/{group_id}/members", response_model=GroupMemberResponse, status_code=201)
def add_member(
    request: Request,
    group_id: int,
    body: GroupMemberAdd,
    current_user: User = Depends(require_admin),
) -> GroupMemberResponse:
    store: GroupStore = request.app.state.group_store
    if store.get_group(group_id) is None:
        raise _not_found("Group")
    member = request.app.state.user_store.get_by_id(body.user_id)
    if member is None or member.is_ghost:
        raise _not_found("User")
    level = ACCESS_LEVELS[body.access_level]
    store.add_member(group_id, body.user_id, level)
    return GroupMemberResponse(user_id=body.user_id, access_level=level)


@router.delete("/groups/{group_id}/members/{user_id}", status_code=204)
def remove_member(
    request: Request,
    group_id: int,
    user_id: int,
    current_user: User = Depends(require_admin),
) -> Response:
    if not request.app.state.group_store.remove_member(group_id, user_id):
        raise _not_found("Membership")
    return Response(status_code=204)


@router.get("/users/{user_id}/groups", response_model=list[GroupResponse])
def user_groups(request: Request, user_id: int, current_user: User = Depends(require_admin)) -> list[GroupResponse]:
    """Groups the user is a direct member of. Inherited requirements are not listed here."""
    user = request.app.state.user_store.get_by_id(user_id)
    if user is None or user.is_ghost:
        raise _not_found("User")
    return [_to_response(g) for g in request.app.state.group_store.groups_for_user(user_id)]
