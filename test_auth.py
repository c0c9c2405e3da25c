import hmac
import unittest
from datetime import timedelta
from unittest import mock

from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

import auth_utils
from auth_utils import (
    AuthResult,
    Scope,
    authenticate,
    check_admin_password,
    clean_expired_sessions,
    create_admin_session,
    create_api_token,
    delete_admin_session,
    delete_api_token,
    has_any_tokens,
    has_scope,
    is_auth_enabled,
    list_api_tokens,
    login,
    require_scope,
    validate_admin_session,
    validate_api_token,
    validate_auth,
)
from config import TestingConfig
from errors import AuthError, ForbiddenError, NotFoundError, ValidationError
from models import AdminSession, ApiToken, utcnow
from store import Store


def protected_config(password="correct horse"):
    config = TestingConfig()
    config.ADMIN_PASSWORD = password
    return config


class PasswordTestCase(unittest.TestCase):
    def setUp(self):
        self.store = Store(protected_config()).init()

    def tearDown(self):
        self.store.close()

    def test_check_admin_password(self):
        self.assertTrue(check_admin_password(self.store, "correct horse"))
        self.assertFalse(check_admin_password(self.store, "correct hors"))
        self.assertFalse(check_admin_password(self.store, ""))
        self.assertFalse(check_admin_password(self.store, None))

    def test_password_compared_as_fixed_length_digests(self):
        with mock.patch("auth_utils.hmac.compare_digest", wraps=hmac.compare_digest) as compare:
            check_admin_password(self.store, "x")
            check_admin_password(self.store, "a much longer wrong password than the real one")

        self.assertEqual(compare.call_count, 2)
        for call in compare.call_args_list:
            supplied, expected = call.args
            self.assertEqual(len(supplied), 32)
            self.assertEqual(len(expected), 32)

    def test_login(self):
        session = login(self.store, "correct horse")
        self.assertTrue(session["token"].startswith("csa_"))
        self.assertIsNotNone(session["expires_at"])

        with self.assertRaises(AuthError):
            login(self.store, "wrong")
        with self.assertRaises(ValidationError):
            login(self.store, "")

    def test_open_mode(self):
        open_store = Store(TestingConfig()).init()
        try:
            self.assertFalse(is_auth_enabled(open_store))
            self.assertFalse(check_admin_password(open_store, ""))
            self.assertEqual(login(open_store, "anything")["token"], "")

            auth = authenticate(open_store, None)
            self.assertTrue(auth.authenticated)
            self.assertEqual(auth.source, "open")
            self.assertEqual(auth.scopes, ["read", "write", "admin", "mcp"])
        finally:
            open_store.close()


class AdminSessionTestCase(unittest.TestCase):
    def setUp(self):
        self.store = Store(protected_config()).init()

    def tearDown(self):
        self.store.close()

    def test_session_grants_every_scope(self):
        session = create_admin_session(self.store, hours=1)
        auth = validate_auth(self.store, session["token"])

        self.assertTrue(auth.authenticated)
        self.assertEqual(auth.source, "admin_session")
        self.assertEqual(auth.scopes, Scope.ALL.names())
        self.assertEqual(auth.expires_at, session["expires_at"])

    def test_session_found_by_hash_lookup(self):
        session = create_admin_session(self.store)
        with mock.patch("auth_utils.hmac.compare_digest") as compare:
            self.assertTrue(validate_admin_session(self.store, session["token"]).authenticated)
            self.assertFalse(validate_admin_session(self.store, session["token"] + "0").authenticated)
        compare.assert_not_called()

    def test_raw_token_not_stored(self):
        session = create_admin_session(self.store)
        with self.store.session() as db:
            stored = db.scalars(select(AdminSession.token_hash)).all()
        self.assertEqual(len(stored), 1)
        self.assertNotIn(session["token"], stored)

    def test_non_positive_hours_never_expire(self):
        session = create_admin_session(self.store, hours=0)
        self.assertIsNone(session["expires_at"])
        later = utcnow() + timedelta(days=3650)
        with mock.patch("auth_utils.utcnow", return_value=later):
            self.assertTrue(validate_admin_session(self.store, session["token"]).authenticated)

    def test_expired_session_rejected_and_removed(self):
        session = create_admin_session(self.store, hours=1)
        later = utcnow() + timedelta(hours=2)
        with mock.patch("auth_utils.utcnow", return_value=later):
            self.assertFalse(validate_admin_session(self.store, session["token"]).authenticated)
        with self.store.session() as db:
            self.assertEqual(db.scalar(select(func.count(AdminSession.id))), 0)

    def test_clean_expired_sessions(self):
        create_admin_session(self.store, hours=1)
        keep = create_admin_session(self.store, hours=48)
        create_admin_session(self.store, hours=0)

        later = utcnow() + timedelta(hours=2)
        with mock.patch("auth_utils.utcnow", return_value=later):
            self.assertEqual(clean_expired_sessions(self.store), 1)
            self.assertEqual(clean_expired_sessions(self.store), 0)
            self.assertTrue(validate_admin_session(self.store, keep["token"]).authenticated)

    def test_logout_is_idempotent(self):
        session = create_admin_session(self.store)
        self.assertTrue(delete_admin_session(self.store, session["token"]))
        self.assertFalse(delete_admin_session(self.store, session["token"]))
        self.assertFalse(validate_auth(self.store, session["token"]).authenticated)

    def test_storage_failure_is_unauthenticated(self):
        session = create_admin_session(self.store)
        error = OperationalError("SELECT", {}, Exception("disk I/O error"))
        with mock.patch.object(self.store, "session", side_effect=error):
            auth = validate_auth(self.store, session["token"])
        self.assertFalse(auth.authenticated)
        self.assertEqual(auth.scopes, [])


class ApiTokenTestCase(unittest.TestCase):
    def setUp(self):
        self.store = Store(protected_config()).init()

    def tearDown(self):
        self.store.close()

    def test_create_returns_secret_once(self):
        created = create_api_token(self.store, "ci", ["write", "read"])

        self.assertTrue(created["token"].startswith("cs_"))
        self.assertEqual(created["token_prefix"], created["token"][:7])
        self.assertEqual(created["scopes"], ["read", "write"])
        listed = list_api_tokens(self.store)
        self.assertEqual(len(listed), 1)
        self.assertNotIn("token", listed[0])
        with self.store.session() as db:
            row = db.scalar(select(ApiToken))
            self.assertNotEqual(row.token_hash, created["token"])
            self.assertNotIn(created["token"], row.token_hash)

    def test_default_scope_is_read(self):
        self.assertEqual(create_api_token(self.store, "reader")["scopes"], ["read"])

    def test_invalid_scopes(self):
        with self.assertRaises(ValidationError):
            create_api_token(self.store, "bad", ["superuser"])
        with self.assertRaises(ValidationError):
            create_api_token(self.store, "none", [])

    def test_validate_updates_last_used(self):
        created = create_api_token(self.store, "ci", ["read"])
        self.assertIsNone(list_api_tokens(self.store)[0]["last_used_at"])

        auth = validate_api_token(self.store, created["token"])
        self.assertTrue(auth.authenticated)
        self.assertEqual(auth.source, "api_token")
        self.assertEqual(auth.token_id, created["id"])
        self.assertIsNotNone(list_api_tokens(self.store)[0]["last_used_at"])

    def test_wrong_secret_rejected(self):
        created = create_api_token(self.store, "ci")
        tampered = created["token"][:-1] + ("0" if created["token"][-1] != "0" else "1")

        self.assertFalse(validate_api_token(self.store, tampered).authenticated)
        self.assertFalse(validate_api_token(self.store, "cs_unknown").authenticated)
        self.assertFalse(validate_api_token(self.store, "").authenticated)

    def test_unknown_lookup_key_still_checks_a_hash(self):
        with mock.patch("auth_utils.check_password_hash", return_value=False) as check:
            validate_api_token(self.store, "cs_" + "0" * 60)
        check.assert_called_once()

    def test_deleted_token_fails_on_replay(self):
        created = create_api_token(self.store, "ci", ["read", "write"])
        self.assertTrue(validate_api_token(self.store, created["token"]).authenticated)

        self.assertTrue(delete_api_token(self.store, created["id"]))
        self.assertFalse(validate_api_token(self.store, created["token"]).authenticated)
        self.assertFalse(authenticate(self.store, created["token"]).authenticated)
        with self.assertRaises(NotFoundError):
            delete_api_token(self.store, created["id"])

    def test_has_any_tokens(self):
        self.assertFalse(has_any_tokens(self.store))
        create_api_token(self.store, "ci")
        self.assertTrue(has_any_tokens(self.store))

    def test_last_used_failure_does_not_fail_validation(self):
        created = create_api_token(self.store, "ci")
        error = OperationalError("UPDATE", {}, Exception("database is locked"))
        with mock.patch.object(self.store, "transaction", side_effect=error):
            self.assertTrue(validate_api_token(self.store, created["token"]).authenticated)

    def test_prefix_picks_validation_path(self):
        created = create_api_token(self.store, "ci")
        session = create_admin_session(self.store)

        with mock.patch("auth_utils.validate_admin_session", wraps=validate_admin_session) as sessions, \
                mock.patch("auth_utils.validate_api_token", wraps=validate_api_token) as tokens:
            self.assertEqual(validate_auth(self.store, created["token"]).source, "api_token")
            self.assertEqual(validate_auth(self.store, session["token"]).source, "admin_session")
            self.assertFalse(validate_auth(self.store, "Bearer nonsense").authenticated)

        self.assertEqual(sessions.call_count, 1)
        self.assertEqual(tokens.call_count, 1)

    def test_authenticate_without_credential(self):
        auth = authenticate(self.store, None)
        self.assertFalse(auth.authenticated)
        with self.assertRaises(AuthError):
            require_scope(auth, "read")


class ScopeTestCase(unittest.TestCase):
    def auth(self, *scopes):
        return AuthResult(authenticated=True, scopes=list(scopes), source="api_token")

    def test_admin_implies_everything(self):
        auth = self.auth("admin")
        for scope in ("read", "write", "admin", "mcp"):
            self.assertTrue(has_scope(auth, scope))

    def test_write_implies_read(self):
        auth = self.auth("write")
        self.assertTrue(has_scope(auth, "write"))
        self.assertTrue(has_scope(auth, "read"))
        self.assertIs(require_scope(auth, "read"), auth)
        self.assertFalse(has_scope(auth, "admin"))
        self.assertFalse(has_scope(auth, "mcp"))

    def test_read_does_not_imply_write(self):
        auth = self.auth("read")
        self.assertFalse(has_scope(auth, "write"))

    def test_mcp_is_independent_of_read_and_write(self):
        tool_only = self.auth("mcp")
        self.assertTrue(has_scope(tool_only, "mcp"))
        self.assertFalse(has_scope(tool_only, "read"))
        self.assertFalse(has_scope(tool_only, "write"))

        reader = self.auth("read", "write")
        self.assertFalse(has_scope(reader, "mcp"))

    def test_write_token_can_read_back(self):
        store = Store(protected_config()).init()
        try:
            created = create_api_token(store, "writer", ["write"])
            auth = validate_api_token(store, created["token"])
            self.assertEqual(auth.scopes, ["write"])
            self.assertTrue(has_scope(auth, "read"))
            self.assertTrue(has_scope(auth, "write"))
            self.assertFalse(has_scope(auth, "mcp"))
        finally:
            store.close()

    def test_require_scope(self):
        reader = self.auth("read")
        self.assertIs(require_scope(reader, Scope.READ), reader)
        self.assertIs(require_scope(reader, "read"), reader)
        with self.assertRaises(ForbiddenError):
            require_scope(self.auth("read"), "write")
        with self.assertRaises(AuthError):
            require_scope(AuthResult(authenticated=False), "read")
        with self.assertRaises(ValidationError):
            require_scope(self.auth("read"), "root")

    def test_scope_names(self):
        self.assertEqual(Scope.from_names(["mcp", "read", "bogus"]).names(), ["read", "mcp"])
        self.assertEqual(Scope.ALL.names(), ["read", "write", "admin", "mcp"])
        self.assertEqual(Scope.NONE.names(), [])


if __name__ == "__main__":
    unittest.main()
