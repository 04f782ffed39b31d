"""Tests for the state store, its lock and run artifact storage."""

import json

import pytest

from converge.models import Plan, RunStatus, RunSummary, StateRecord, StateSnapshot
from converge.storage import LockError, LockHeldError, LockToken, StateStore, StorageManager


def record(address="aws_vpc.main"):
    resource_type, name = address.split(".")
    return StateRecord(
        address=address,
        resource_type=resource_type,
        name=name,
        provider_id="vpc-0123456789abcdef0",
        attributes={"cidr_block": "10.0.0.0/16"},
    )


class TestStateLock:
    def test_second_acquire_fails_fast(self, store):
        token = store.acquire("apply", who="alice@host")

        with pytest.raises(LockHeldError) as exc:
            store.acquire("plan", who="bob@host")
        assert exc.value.lock_info.id == token.id
        assert exc.value.lock_info.who == "alice@host"
        assert exc.value.lock_info.operation == "apply"

        store.release(token)
        store.release(store.acquire("plan"))

    def test_second_store_on_same_directory_sees_lock(self, settings, store):
        other = StateStore(settings.state_dir, settings.workspace)
        with store.lock("apply"):
            with pytest.raises(LockHeldError):
                other.acquire("apply")
        other.release(other.acquire("apply"))

    def test_workspaces_lock_independently(self, settings, store):
        staging = StateStore(settings.state_dir, "staging")
        with store.lock("apply"):
            with staging.lock("apply") as token:
                assert token.workspace == "staging"

    def test_lock_context_releases_on_error(self, store):
        with pytest.raises(RuntimeError):
            with store.lock("apply"):
                raise RuntimeError("boom")
        assert store.current_lock() is None

    def test_release_with_stale_token(self, store):
        token = store.acquire("apply")
        store.release(token)
        with pytest.raises(LockError, match="is not held"):
            store.release(token)

    def test_foreign_token_rejected(self, store):
        held = store.acquire("apply")
        foreign = LockToken(id="not-the-holder", workspace=store.workspace, operation="apply")
        with pytest.raises(LockError, match="no longer held"):
            store.save(StateSnapshot(), foreign)
        store.release(held)

    def test_force_unlock(self, store):
        token = store.acquire("apply")
        with pytest.raises(LockError, match="mismatch"):
            store.force_unlock("wrong")
        store.force_unlock(token.id)
        assert store.current_lock() is None
        with pytest.raises(LockError, match="not locked"):
            store.force_unlock(token.id)


class TestStatePersistence:
    def test_empty_state(self, store):
        snapshot = store.load()
        assert snapshot.serial == 0
        assert snapshot.resources == {}
        assert snapshot.workspace == "default"

    def test_save_requires_token_and_bumps_serial(self, store):
        snapshot = store.load()
        snapshot.resources["aws_vpc.main"] = record()

        with store.lock("apply") as token:
            store.save(snapshot, token)
            store.save(snapshot, token)

        loaded = store.load()
        assert loaded.serial == 2
        assert loaded.lineage == snapshot.lineage
        assert loaded.resources["aws_vpc.main"].provider_id == "vpc-0123456789abcdef0"

        with open(store.state_path, encoding="utf-8") as f:
            assert json.load(f)["serial"] == 2

    def test_no_temp_files_left_behind(self, store):
        with store.lock("apply") as token:
            store.save(store.load(), token)
        names = sorted(p.name for p in store.state_dir.iterdir())
        assert names == ["default.tfstate.json"]


class TestStorageManager:
    @pytest.fixture
    def artifacts(self, tmp_path):
        return StorageManager(str(tmp_path / "artifacts"))

    def test_plan_round_trip(self, artifacts):
        plan = Plan(run_id="run_1")
        artifacts.save_plan("run_1", plan, "No changes.")

        assert artifacts.run_exists("run_1")
        assert artifacts.load_plan("run_1").run_id == "run_1"
        assert (artifacts.base_path / "run_1" / "plan.txt").read_text() == "No changes."
        assert artifacts.load_plan("run_missing") is None

    def test_summary_and_listing(self, artifacts):
        artifacts.save_summary("run_b", RunSummary(run_id="run_b", status=RunStatus.COMPLETED))
        artifacts.save_summary("run_a", RunSummary(run_id="run_a", status=RunStatus.FAILED))

        assert artifacts.get_all_runs() == ["run_a", "run_b"]
        assert artifacts.load_summary("run_a").status == RunStatus.FAILED
        assert artifacts.delete_run("run_a")
        assert not artifacts.delete_run("run_a")
        assert artifacts.get_all_runs() == ["run_b"]
