from __future__ import annotations

import os
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from sqlalchemy import delete, select, text
from sqlalchemy.exc import IntegrityError

from db_support import TEST_ENV, create_test_session_factory, create_user
from deviceauth.db import as_utc
from deviceauth.errors import ApiError, NotFound, Unauthorized
from deviceauth.models import CliToken, User
from deviceauth.security import hash_secret
from deviceauth.services.cli_tokens import (
    list_cli_tokens,
    mint_cli_token,
    rename_cli_token,
    revoke_cli_token,
    validate_cli_token,
)
from deviceauth.settings import get_settings

T0 = datetime(2026, 10, 18, 9, 0, 0, tzinfo=timezone.utc)


class CliTokenServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        env_patcher = patch.dict(os.environ, TEST_ENV, clear=False)
        env_patcher.start()
        self.addCleanup(env_patcher.stop)
        get_settings.cache_clear()
        self.addCleanup(get_settings.cache_clear)

        self.engine, session_factory = create_test_session_factory()
        self.db = session_factory()
        self.addCleanup(self.db.close)
        self.user = create_user(self.db)
        self.other_user = create_user(self.db, external_id="google-oauth2|2002", email="other@example.com")

    def _mint(self, *, user_id: int | None = None, device_name: str | None = None, now_utc: datetime = T0):
        minted = mint_cli_token(
            self.db,
            user_id=user_id or self.user.id,
            device_name=device_name,
            now_utc=now_utc,
        )
        self.db.commit()
        return minted

    def test_mint_stores_only_digest(self) -> None:
        minted = self._mint(device_name="  workstation  ")

        row = self.db.scalar(select(CliToken).where(CliToken.id == minted.token.id))
        self.assertEqual(row.token_hash, hash_secret(minted.raw_token))
        self.assertNotIn(
            minted.raw_token,
            [row.token_hash, row.label, row.device_name, row.device_fingerprint, row.user_agent],
        )
        self.assertEqual(row.label, "workstation")
        self.assertEqual(row.device_name, "workstation")
        self.assertEqual(minted.expires_in, 30 * 24 * 60 * 60)
        self.assertEqual(as_utc(row.expires_at), T0 + timedelta(days=30))

    def test_validate_returns_owner_and_touches_last_used(self) -> None:
        minted = self._mint()

        user_id = validate_cli_token(self.db, minted.raw_token, now_utc=T0 + timedelta(minutes=5))

        self.assertEqual(user_id, self.user.id)
        row = self.db.get(CliToken, minted.token.id)
        self.assertEqual(as_utc(row.last_used_at), T0 + timedelta(minutes=5))

        validate_cli_token(self.db, minted.raw_token, now_utc=T0 + timedelta(minutes=5, seconds=10))
        self.assertEqual(as_utc(row.last_used_at), T0 + timedelta(minutes=5))

    def test_validate_rejects_unknown_empty_and_expired_tokens(self) -> None:
        minted = self._mint()

        with self.assertRaises(Unauthorized):
            validate_cli_token(self.db, "", now_utc=T0)
        with self.assertRaises(Unauthorized):
            validate_cli_token(self.db, "not-a-real-token", now_utc=T0)
        with self.assertRaises(Unauthorized):
            validate_cli_token(self.db, minted.raw_token, now_utc=T0 + timedelta(days=31))

    def test_revoke_is_idempotent_and_blocks_further_use(self) -> None:
        minted = self._mint()

        first = revoke_cli_token(self.db, user_id=self.user.id, token_id=minted.token.id, now_utc=T0)
        revoked_at = first.revoked_at
        second = revoke_cli_token(
            self.db,
            user_id=self.user.id,
            token_id=minted.token.id,
            now_utc=T0 + timedelta(hours=1),
        )

        self.assertEqual(second.revoked_at, revoked_at)
        with self.assertRaises(Unauthorized):
            validate_cli_token(self.db, minted.raw_token, now_utc=T0 + timedelta(minutes=1))

    def test_tokens_of_other_users_are_not_found(self) -> None:
        minted = self._mint(user_id=self.other_user.id)

        with self.assertRaises(NotFound):
            revoke_cli_token(self.db, user_id=self.user.id, token_id=minted.token.id)
        with self.assertRaises(NotFound):
            rename_cli_token(self.db, user_id=self.user.id, token_id=minted.token.id, name="mine")
        with self.assertRaises(NotFound):
            revoke_cli_token(self.db, user_id=self.user.id, token_id=999_999)

        row = self.db.get(CliToken, minted.token.id)
        self.assertIsNone(row.revoked_at)

    def test_rename_updates_label_and_rejects_blank(self) -> None:
        minted = self._mint(device_name="laptop")

        renamed = rename_cli_token(self.db, user_id=self.user.id, token_id=minted.token.id, name=" build box ")
        self.assertEqual(renamed.label, "build box")
        self.assertEqual(renamed.device_name, "laptop")

        with self.assertRaises(ApiError) as ctx:
            rename_cli_token(self.db, user_id=self.user.id, token_id=minted.token.id, name="   ")
        self.assertEqual(ctx.exception.status_code, 422)

    def test_list_is_newest_first_and_includes_revoked(self) -> None:
        oldest = self._mint(device_name="one", now_utc=T0)
        middle = self._mint(device_name="two", now_utc=T0 + timedelta(hours=1))
        newest = self._mint(device_name="three", now_utc=T0 + timedelta(hours=2))
        self._mint(user_id=self.other_user.id, device_name="foreign", now_utc=T0 + timedelta(hours=3))
        revoke_cli_token(self.db, user_id=self.user.id, token_id=middle.token.id, now_utc=T0)

        tokens = list_cli_tokens(self.db, user_id=self.user.id)

        self.assertEqual(
            [token.id for token in tokens],
            [newest.token.id, middle.token.id, oldest.token.id],
        )
        self.assertIsNotNone(tokens[1].revoked_at)

    def test_tokens_block_deleting_their_owner(self) -> None:
        (foreign_key,) = CliToken.__table__.c.user_id.foreign_keys
        self.assertEqual(foreign_key.ondelete, "RESTRICT")

        minted = self._mint(now_utc=T0)
        self.db.execute(text("PRAGMA foreign_keys=ON"))
        with self.assertRaises(IntegrityError):
            self.db.execute(delete(User).where(User.id == self.user.id))
        self.db.rollback()

        self.assertIsNotNone(self.db.get(CliToken, minted.token.id))


if __name__ == "__main__":
    unittest.main()
