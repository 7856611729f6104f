"""Tests for the manage link alias store."""

import json
from concurrent.futures import ThreadPoolExecutor

import pytest

from booking_desk.alias_store import AliasFile, ManageLinkAliasStore, generate_alias
from booking_desk.models import ManageLinkAliasRecord

EXPIRES_AT = "2026-10-28T15:00:00.000Z"


def _store(tmp_path, clock, aliases):
    candidates = iter(aliases)
    return ManageLinkAliasStore(
        AliasFile(tmp_path / "aliases.json", clock=clock),
        clock=clock,
        alias_factory=lambda: next(candidates),
    )


class TestRegister:
    def test_same_token_reuses_alias(self, alias_store):
        first = alias_store.register("token-1", EXPIRES_AT)
        second = alias_store.register("token-1", EXPIRES_AT)

        assert first is not None
        assert first == second
        assert alias_store.resolve(first).token == "token-1"

    def test_persisted_record_shape(self, tmp_path, clock):
        store = _store(tmp_path, clock, ["abc12345"])
        store.register("token-1", EXPIRES_AT)

        with open(tmp_path / "aliases.json", "r", encoding="utf-8") as f:
            data = json.load(f)

        assert data == {
            "abc12345": {
                "token": "token-1",
                "expiresAt": EXPIRES_AT,
                "createdAt": int(clock().timestamp() * 1000),
            }
        }
        assert [p.name for p in tmp_path.iterdir()] == ["aliases.json"]

    def test_collisions_are_retried(self, tmp_path, clock):
        store = _store(tmp_path, clock, ["taken", "taken", "fresh"])
        assert store.register("token-1", EXPIRES_AT) == "taken"
        assert store.register("token-2", EXPIRES_AT) == "fresh"

    def test_gives_up_after_five_collisions(self, tmp_path, clock):
        store = _store(tmp_path, clock, ["taken"] * 6)
        store.register("token-1", EXPIRES_AT)

        assert store.register("token-2", EXPIRES_AT) is None
        assert list(store.storage.read()) == ["taken"]

    def test_expired_records_are_collected(self, tmp_path, clock):
        store = _store(tmp_path, clock, ["old", "new"])
        store.register("token-old", "2026-10-21T15:30:00.000Z")
        clock.advance(hours=1)

        store.register("token-new", EXPIRES_AT)

        assert list(store.storage.read()) == ["new"]

    def test_empty_token(self, alias_store):
        assert alias_store.register("", EXPIRES_AT) is None

    def test_generated_aliases_are_short_and_url_safe(self):
        alias = generate_alias()
        assert len(alias) == 8
        assert alias.replace("-", "").replace("_", "").isalnum()


class TestResolveAndPurge:
    def test_resolve_unknown(self, alias_store):
        assert alias_store.resolve("missing") is None
        assert alias_store.resolve("") is None

    def test_resolve_expired_deletes_record(self, alias_store, clock):
        alias = alias_store.register("token-1", "2026-10-21T16:00:00.000Z")
        clock.advance(hours=2)

        assert alias_store.resolve(alias) is None
        assert alias_store.storage.read() == {}
        assert alias_store.purge_expired() == 0

    def test_purge_counts_each_expired_alias_once(self, tmp_path, clock):
        store = _store(tmp_path, clock, ["a", "b", "c"])
        store.register("token-a", "2026-10-21T16:00:00.000Z")
        store.register("token-b", "2026-10-21T16:00:00.000Z")
        store.register("token-c", EXPIRES_AT)
        clock.advance(hours=2)

        assert store.purge_expired() == 2
        assert store.purge_expired() == 0
        assert store.resolve("c").token == "token-c"

    def test_purge_with_explicit_now(self, alias_store, clock):
        alias_store.register("token-1", "2026-10-21T16:00:00.000Z")
        assert alias_store.purge_expired(clock()) == 0

    def test_reset(self, alias_store):
        alias = alias_store.register("token-1", EXPIRES_AT)
        alias_store.reset()
        assert alias_store.resolve(alias) is None


class TestAliasFile:
    def test_missing_file_is_empty(self, tmp_path, clock):
        assert AliasFile(tmp_path / "nope" / "aliases.json", clock=clock).read() == {}

    def test_malformed_records_are_dropped(self, tmp_path, clock):
        path = tmp_path / "aliases.json"
        path.write_text(
            json.dumps(
                {
                    "good": {"token": "t", "expiresAt": EXPIRES_AT, "createdAt": 1},
                    "no-token": {"expiresAt": EXPIRES_AT},
                    "not-a-dict": "oops",
                    "no-created": {"token": "t2", "expiresAt": EXPIRES_AT},
                }
            ),
            encoding="utf-8",
        )

        records = AliasFile(path, clock=clock).read()

        assert sorted(records) == ["good", "no-created"]
        assert records["good"].created_at == 1
        assert records["no-created"].created_at == int(clock().timestamp() * 1000)

    def test_write_creates_parent_directories(self, tmp_path, clock):
        store = ManageLinkAliasStore.at_path(tmp_path / "cache" / "aliases.json", clock=clock)
        alias = store.register("token-1", EXPIRES_AT)

        assert (tmp_path / "cache" / "aliases.json").exists()
        assert alias in json.loads((tmp_path / "cache" / "aliases.json").read_text())

    def test_corrupt_file_raises(self, tmp_path, clock):
        path = tmp_path / "aliases.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(ValueError):
            AliasFile(path, clock=clock).read()


class TestConcurrency:
    def test_threaded_registrations_are_all_kept(self, tmp_path, clock):
        store = ManageLinkAliasStore.at_path(tmp_path / "aliases.json", clock=clock)
        tokens = [f"token-{i}" for i in range(200)]

        with ThreadPoolExecutor(max_workers=16) as pool:
            aliases = list(pool.map(lambda t: store.register(t, EXPIRES_AT), tokens))

        assert all(aliases)
        assert len(set(aliases)) == len(tokens)
        for alias, token in zip(aliases, tokens):
            assert store.resolve(alias).token == token
        assert [p.name for p in tmp_path.iterdir()] == ["aliases.json"]

    def test_failed_write_leaves_no_temp_file(self, tmp_path, clock):
        storage = AliasFile(tmp_path / "aliases.json", clock=clock)

        with pytest.raises(TypeError):
            storage.write(
                {"bad": ManageLinkAliasRecord(token=object(), expires_at=EXPIRES_AT, created_at=1)}
            )

        assert list(tmp_path.iterdir()) == []
