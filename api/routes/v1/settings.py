"""
api/routes/v1/settings.py -- Application settings and terms of service.

Routes (admin only):
  GET   /api/v1/application/settings  -- current sign-in policy
  PATCH /api/v1/application/settings  -- change sign-in policy at runtime
  GET   /api/v1/application/terms     -- current terms version (404 if none)
  POST  /api/v1/application/terms     -- publish a new terms version

Publishing terms does not by itself force anyone to accept them; set
enforce_terms to make the terms gate active.
"""

from __future__ import annotations

import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Request

from api.models import AppSettingsPatch, AppSettingsResponse, TermsCreate, TermsResponse
from auth.dependencies import require_admin
from auth.models import Term, User
from auth.store import UserStore

logger = logging.getLogger("gatehouse.api.settings")

router = APIRouter()


def _term_response(term: Term) -> TermsResponse:
    return TermsResponse(id=term.id, terms=term.terms, created_at=term.created_at or "")


@router.get("/application/settings", response_model=AppSettingsResponse)
def get_settings_route(request: Request, current_user: User = Depends(require_admin)) -> AppSettingsResponse:
    user_store: UserStore = request.app.state.user_store
    return AppSettingsResponse(**asdict(user_store.get_app_settings()))


@router.patch("/application/settings", response_model=AppSettingsResponse)
def update_settings(
    request: Request,
    body: AppSettingsPatch,
    current_user: User = Depends(require_admin),
) -> AppSettingsResponse:
    user_store: UserStore = request.app.state.user_store
    changes = body.model_dump(exclude_none=True)
    updated = user_store.update_app_settings(**changes)
    if changes:
        logger.info("Admin %r changed application settings: %s", current_user.username, changes)
    return AppSettingsResponse(**asdict(updated))


@router.get("/application/terms", response_model=TermsResponse)
def current_terms(request: Request, current_user: User = Depends(require_admin)) -> TermsResponse:
    term = request.app.state.user_store.latest_term()
    if term is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "No terms have been published."},
        )
    return _term_response(term)


@router.post("/application/terms", response_model=TermsResponse, status_code=201)
def publish_terms(
    request: Request,
    body: TermsCreate,
    current_user: User = Depends(require_admin),
) -> TermsResponse:
    user_store: UserStore = request.app.state.user_store
    term_id = user_store.create_term(body.terms)
    logger.info("Admin %r published terms version %d", current_user.username, term_id)
    return _term_response(user_store.get_term(term_id))
