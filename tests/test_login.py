"""
tests/test_login.py -- Integration tests for the web sign-in flow.

Drives /users/sign_in through the real ASGI stack with the Browser helper,
which follows redirects and posts the page's CSRF token like a real browser.

Coverage:
  - Sign-in page layout: tabs and panes, sign-up toggle, OAuth buttons
  - Username or email login, wrong password, unknown login
  - Blocked and locked accounts, lockout after repeated failures
  - Return-to page after sign-in, open-redirect guard
  - Already signed in, sign out, remember me cookie lifetime
  - First-run password setup for the seeded admin
  - Registration
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone

from markupsafe import escape

from auth.tokens import hash_password
from conftest import PASSWORD, make_user
from core import messages
from core.config import get_settings


def _count(pattern: str, html: str) -> int:
    return len(re.findall(pattern, html))


class TestSignInPage:
    def test_tabs_match_panes_with_one_active_each(self, browser, user_store) -> None:
        resp = browser.visit("/users/sign_in")
        assert resp.status_code == 200
        html = resp.text
        assert '<ul class="nav nav-tabs new-session-tabs"' in html
        tabs = _count(r'<li class="nav-item[^"]*"', html)
        panes = _count(r'class="tab-pane[^"]*"', html)
        assert tabs == panes == 2
        assert _count(r'<li class="nav-item active"', html) == 1
        assert _count(r'class="tab-pane active"', html) == 1

    def test_register_tab_hidden_when_signup_disabled(self, browser, user_store) -> None:
        user_store.update_app_settings(signup_enabled=False)
        html = browser.visit("/users/sign_in").text
        assert "Register" not in html
        assert _count(r'class="tab-pane[^"]*"', html) == 1

    def test_no_oauth_buttons_without_providers(self, browser) -> None:
        html = browser.visit("/users/sign_in").text
        assert "omniauth-container" not in html

    def test_every_form_carries_csrf_token(self, browser) -> None:
        html = browser.visit("/users/sign_in").text
        assert _count(r"<form ", html) == _count(r'name="authenticity_token"', html)


class TestPasswordSignIn:
    def test_sign_in_with_username(self, browser, user_store) -> None:
        make_user(user_store, "alice")
        browser.sign_in("alice")
        assert browser.path == "/"
        assert messages.SIGNED_IN in browser.text
        assert "Welcome" in browser.text

    def test_sign_in_with_email_is_case_insensitive(self, browser, user_store) -> None:
        make_user(user_store, "alice")
        browser.sign_in("ALICE@example.com")
        assert browser.path == "/"

    def test_trackable_attributes_recorded(self, browser, user_store) -> None:
        make_user(user_store, "alice")
        browser.sign_in("alice")
        user = user_store.get_by_username("alice")
        assert user.sign_in_count == 1
        assert user.current_sign_in_at is not None
        assert user.current_sign_in_ip is not None

    def test_wrong_password(self, browser, user_store) -> None:
        make_user(user_store, "alice")
        browser.sign_in("alice", "wrong-password")
        assert browser.path == "/users/sign_in"
        assert messages.INVALID_LOGIN in browser.text
        assert user_store.get_by_username("alice").failed_attempts == 1

    def test_unknown_login_gets_the_same_message(self, browser) -> None:
        browser.sign_in("nobody")
        assert browser.path == "/users/sign_in"
        assert messages.INVALID_LOGIN in browser.text

    def test_failed_sign_in_does_not_touch_trackable_attributes(self, browser, user_store) -> None:
        make_user(user_store, "alice")
        browser.sign_in("alice", "wrong-password")
        user = user_store.get_by_username("alice")
        assert user.sign_in_count == 0
        assert user.current_sign_in_at is None

    def test_blocked_user(self, browser, user_store) -> None:
        make_user(user_store, "alice", state="blocked")
        browser.sign_in("alice")
        assert browser.path == "/users/sign_in"
        assert messages.ACCOUNT_BLOCKED in browser.text

    def test_locked_after_maximum_failed_attempts(self, browser, user_store) -> None:
        make_user(user_store, "alice")
        for _ in range(get_settings().maximum_failed_attempts):
            browser.sign_in("alice", "wrong-password")
        assert user_store.get_by_username("alice").locked_at is not None
        browser.sign_in("alice")
        assert browser.path == "/users/sign_in"
        assert messages.ACCOUNT_LOCKED in browser.text

    def test_expired_lock_is_cleared(self, browser, user_store) -> None:
        long_ago = datetime.now(timezone.utc) - timedelta(hours=1)
        make_user(user_store, "alice", failed_attempts=10, locked_at=long_ago.isoformat())
        browser.sign_in("alice")
        assert browser.path == "/"

    def test_password_sign_in_disabled(self, browser, user_store) -> None:
        make_user(user_store, "alice")
        browser.visit("/users/sign_in")
        user_store.update_app_settings(password_authentication_enabled=False)
        browser.post("/users/sign_in", {"login": "alice", "password": PASSWORD})
        assert browser.path == "/users/sign_in"
        assert messages.PASSWORD_AUTH_DISABLED in browser.text
        assert 'id="user_login"' not in browser.text


class TestRedirects:
    def test_protected_page_returns_after_sign_in(self, browser, user_store) -> None:
        make_user(user_store, "alice")
        browser.visit("/profile/account")
        assert browser.path == "/users/sign_in"
        assert messages.UNAUTHENTICATED in browser.text
        browser.post("/users/sign_in", {"login": "alice", "password": PASSWORD})
        assert browser.path == "/profile/account"

    def test_root_redirects_silently(self, browser) -> None:
        browser.visit("/")
        assert browser.path == "/users/sign_in"
        assert messages.UNAUTHENTICATED not in browser.text

    def test_next_param_only_accepts_relative_paths(self, browser, user_store) -> None:
        make_user(user_store, "alice")
        browser.visit("/users/sign_in", params={"next": "//evil.example.com/"})
        browser.post("/users/sign_in", {"login": "alice", "password": PASSWORD})
        assert browser.path == "/"

    def test_already_signed_in(self, browser, user_store) -> None:
        make_user(user_store, "alice")
        browser.sign_in("alice")
        browser.visit("/users/sign_in")
        assert browser.path == "/"
        assert messages.ALREADY_SIGNED_IN in browser.text


class TestSessionLifetime:
    def test_sign_out(self, browser, client, user_store) -> None:
        make_user(user_store, "alice")
        browser.sign_in("alice")
        browser.sign_out()
        assert browser.path == "/users/sign_in"
        assert messages.SIGNED_OUT in browser.text
        assert client.get("/").status_code == 302

    def test_remember_me_extends_cookie(self, browser, client, user_store) -> None:
        make_user(user_store, "alice")
        browser.visit("/users/sign_in")
        resp = client.post(
            "/users/sign_in",
            data={"login": "alice", "password": PASSWORD, "remember_me": "1", "authenticity_token": browser.csrf},
        )
        cookie = next(c for c in resp.headers.get_list("set-cookie") if c.startswith("access_token="))
        assert f"Max-Age={get_settings().remember_me_expire_seconds}" in cookie
        assert resp.headers["cache-control"] == "no-store"

    def test_password_change_ends_other_sessions(self, browser, client, user_store) -> None:
        alice = make_user(user_store, "alice")
        browser.sign_in("alice")
        user_store.set_password(alice.id, hash_password("another-password"))
        browser.visit("/")
        assert browser.path == "/users/sign_in"


class TestInitialSetup:
    def test_seeded_admin_is_sent_to_password_creation(self, browser, user_store) -> None:
        root = user_store.seed_root_admin()
        browser.visit("/users/sign_in")
        assert browser.path == "/users/password/edit"
        assert messages.INITIAL_PASSWORD in browser.text

        browser.post(
            "/users/password/edit",
            {
                "reset_password_token": browser.response.url.params["reset_password_token"],
                "password": "new-root-password",
                "password_confirmation": "new-root-password",
            },
        )
        assert browser.path == "/users/sign_in"
        assert not user_store.get_by_id(root.id).password_automatically_set
        browser.post("/users/sign_in", {"login": "root", "password": "new-root-password"})
        assert browser.path == "/"

    def test_seed_is_skipped_when_users_exist(self, user_store) -> None:
        make_user(user_store, "alice")
        assert user_store.seed_root_admin() is None


class TestRegistration:
    def _register(self, browser, **overrides):
        form = {
            "name": "Bob",
            "username": "bob",
            "email": "bob@example.com",
            "password": PASSWORD,
            "password_confirmation": PASSWORD,
        }
        form.update(overrides)
        browser.visit("/users/sign_in")
        return browser.post("/users", form)

    def test_register_and_sign_in(self, browser, user_store) -> None:
        self._register(browser)
        assert browser.path == "/"
        assert messages.SIGNED_UP in browser.text
        assert user_store.get_by_username("bob").sign_in_count == 1

    def test_register_shows_errors_on_register_tab(self, browser, user_store) -> None:
        resp = self._register(browser, password_confirmation="something-else")
        assert resp.status_code == 422
        assert str(escape(messages.PASSWORD_CONFIRMATION_MISMATCH)) in resp.text
        assert re.search(r'class="tab-pane active" id="register-pane"', resp.text)
        assert re.search(r'<li class="nav-item active">\s*<a class="nav-link" href="#register-pane"', resp.text)
        assert user_store.get_by_username("bob") is None

    def test_register_duplicate_username(self, browser, user_store) -> None:
        make_user(user_store, "bob")
        resp = self._register(browser, email="other@example.com")
        assert resp.status_code == 422
        assert "already been taken" in resp.text

    def test_register_disabled(self, browser, user_store) -> None:
        user_store.update_app_settings(signup_enabled=False)
        self._register(browser)
        assert browser.path == "/users/sign_in"
        assert messages.SIGNUP_DISABLED in browser.text
        assert user_store.get_by_username("bob") is None
