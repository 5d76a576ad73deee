"""
Storage layer tests.

Covers ``app/storage``:
    - Memory / File / Database / Cached backends
    - backend strategy selection from config, cache limited to single-process file stores
    - repository defaults (seeded users, change-management aggregate)
    - governance audit log cap and non-blocking writes
"""

import errno
import json

import pytest
from sqlalchemy.exc import SQLAlchemyError

from app.config import ProductionConfig, TestingConfig
from app.core.exceptions import PersistenceError
from app.models import db
from app.services import audit_log
from app.storage import get_repositories
from app.storage.backends import (
    CachedBackend,
    DatabaseBackend,
    FileBackend,
    MemoryBackend,
    build_backend,
)
from app.storage.repositories import Repositories


def _raise_oserror(code):
    def _raiser(*args, **kwargs):
        raise OSError(code, "simulated")
    return _raiser


# ═════════════════════════════════════════════════════════════════════════════
# Backends
# ═════════════════════════════════════════════════════════════════════════════


class TestMemoryBackend:
    def test_missing_key_is_none(self):
        assert MemoryBackend().read("submissions") is None

    def test_reads_are_copies(self):
        backend = MemoryBackend()
        backend.write("rows", [{"id": 1}])
        rows = backend.read("rows")
        rows[0]["id"] = 99
        assert backend.read("rows") == [{"id": 1}]
        assert backend.list_keys() == ["rows"]

    def test_reset(self):
        backend = MemoryBackend()
        backend.write("rows", [])
        backend.reset()
        assert backend.list_keys() == []


class TestFileBackend:
    def test_round_trip(self, tmp_path):
        backend = FileBackend(str(tmp_path / "store"))
        assert backend.read("submissions") is None
        assert backend.write("submissions", [{"id": "SP-1"}]) is True
        assert backend.read("submissions") == [{"id": "SP-1"}]
        assert backend.list_keys() == ["submissions"]
        assert json.loads((tmp_path / "store" / "submissions.json").read_text()) == [{"id": "SP-1"}]

    def test_corrupt_file_is_a_failure_not_missing(self, tmp_path):
        (tmp_path / "submissions.json").write_text("{not json")
        with pytest.raises(PersistenceError) as exc:
            FileBackend(str(tmp_path)).read("submissions")
        assert exc.value.code == PersistenceError.FILE_READ_FAILED

    def test_read_only_host_drops_write(self, tmp_path, monkeypatch):
        monkeypatch.setattr("app.storage.backends.tempfile.mkstemp", _raise_oserror(errno.EROFS))
        assert FileBackend(str(tmp_path)).write("submissions", []) is False

    def test_strict_read_only_write_raises(self, tmp_path, monkeypatch):
        monkeypatch.setattr("app.storage.backends.tempfile.mkstemp", _raise_oserror(errno.EROFS))
        with pytest.raises(PersistenceError) as exc:
            FileBackend(str(tmp_path), strict=True).write("submissions", [])
        assert exc.value.code == PersistenceError.FILE_WRITE_FAILED

    def test_other_write_errors_raise(self, tmp_path, monkeypatch):
        monkeypatch.setattr("app.storage.backends.tempfile.mkstemp", _raise_oserror(errno.ENOSPC))
        with pytest.raises(PersistenceError):
            FileBackend(str(tmp_path)).write("submissions", [])

    def test_missing_directory_has_no_keys(self, tmp_path):
        assert FileBackend(str(tmp_path / "nowhere")).list_keys() == []


class TestDatabaseBackend:
    def test_upsert_and_read(self):
        backend = DatabaseBackend()
        assert backend.read("submissions") is None
        backend.write("submissions", [{"id": "SP-1"}])
        backend.write("submissions", [{"id": "SP-1"}, {"id": "SP-2"}])
        assert backend.read("submissions") == [{"id": "SP-1"}, {"id": "SP-2"}]
        assert backend.list_keys() == ["submissions"]

    def test_reset(self):
        backend = DatabaseBackend()
        backend.write("a", {"x": 1})
        backend.reset()
        assert backend.list_keys() == []

    def test_strict_read_failure_raises(self, monkeypatch):
        backend = DatabaseBackend(strict=True)
        backend.write("a", [])

        def _boom(*args, **kwargs):
            raise SQLAlchemyError("down")

        monkeypatch.setattr(db.session, "get", _boom)
        with pytest.raises(PersistenceError) as exc:
            backend.read("a")
        assert exc.value.code == PersistenceError.DB_READ_FAILED

    def test_best_effort_failure_is_soft(self, monkeypatch):
        backend = DatabaseBackend(strict=False)
        backend.write("a", [])

        def _boom(*args, **kwargs):
            raise SQLAlchemyError("down")

        monkeypatch.setattr(db.session, "get", _boom)
        assert backend.read("a") is None
        assert backend.write("a", [1]) is False

    @pytest.mark.parametrize("strict", [True, False])
    def test_key_listing_failure(self, monkeypatch, strict):
        backend = DatabaseBackend(strict=strict)
        backend.write("a", [])

        def _boom(*args, **kwargs):
            raise SQLAlchemyError("down")

        monkeypatch.setattr(db.session, "execute", _boom)
        if strict:
            with pytest.raises(PersistenceError) as exc:
                backend.list_keys()
            assert exc.value.code == PersistenceError.DB_READ_FAILED
        else:
            assert backend.list_keys() == []

    def test_two_workers_see_each_others_writes(self):
        first, second = DatabaseBackend(), DatabaseBackend()
        assert first.read("submissions") is None
        second.write("submissions", [{"id": "SP-1"}])
        rows = first.read("submissions")
        assert rows == [{"id": "SP-1"}]
        first.write("submissions", rows + [{"id": "SP-2"}])
        assert second.read("submissions") == [{"id": "SP-1"}, {"id": "SP-2"}]


class TestCachedBackend:
    def test_read_through_and_refresh_on_write(self):
        inner = MemoryBackend()
        inner.write("rows", [1])
        cached = CachedBackend(inner)
        assert cached.name == "cached-memory"
        assert cached.read("rows") == [1]

        inner.write("rows", [2])
        assert cached.read("rows") == [1]

        cached.write("rows", [3])
        assert cached.read("rows") == [3]
        assert inner.read("rows") == [3]

    def test_dropped_write_still_visible_to_process(self, tmp_path, monkeypatch):
        monkeypatch.setattr("app.storage.backends.tempfile.mkstemp", _raise_oserror(errno.EACCES))
        cached = CachedBackend(FileBackend(str(tmp_path)))
        assert cached.write("rows", [1]) is False
        assert cached.read("rows") == [1]
        assert cached.list_keys() == ["rows"]


class TestBuildBackend:
    def test_testing_config_uses_memory(self, app):
        assert isinstance(build_backend(app.config), MemoryBackend)

    def test_file_backend_is_cached(self, tmp_path):
        backend = build_backend({"DATA_STORE_MODE": "file", "DATA_STORE_BACKEND": "file",
                                 "DATA_STORE_DIR": str(tmp_path), "DATA_STORE_CACHE": True})
        assert isinstance(backend, CachedBackend)
        assert isinstance(backend.inner, FileBackend)

    @pytest.mark.parametrize("config", [
        {"DATA_STORE_MODE": "required_database", "SQLALCHEMY_DATABASE_URI": "sqlite://"},
        {"DATA_STORE_MODE": "preferred_database", "SQLALCHEMY_DATABASE_URI": "sqlite://"},
        {"DATA_STORE_MODE": "file", "DATA_STORE_BACKEND": "database"},
    ])
    def test_database_backend_is_never_cached(self, config):
        backend = build_backend({**config, "DATA_STORE_CACHE": True})
        assert isinstance(backend, DatabaseBackend)

    def test_shared_database_workers_do_not_serve_stale_rows(self):
        config = {"DATA_STORE_MODE": "required_database", "SQLALCHEMY_DATABASE_URI": "sqlite://",
                  "DATA_STORE_CACHE": True}
        worker_a, worker_b = build_backend(config), build_backend(config)
        assert worker_a.read("submissions") is None
        worker_b.write("submissions", [{"id": "SP-1"}])
        rows = worker_a.read("submissions")
        assert rows == [{"id": "SP-1"}]
        worker_a.write("submissions", rows + [{"id": "SP-2"}])
        assert [r["id"] for r in worker_b.read("submissions")] == ["SP-1", "SP-2"]

    def test_production_config_disables_cache(self):
        assert ProductionConfig.DATA_STORE_CACHE is False
        assert TestingConfig.DATA_STORE_CACHE is False

    def test_required_database_without_url(self):
        with pytest.raises(PersistenceError) as exc:
            build_backend({"DATA_STORE_MODE": "required_database"})
        assert exc.value.code == PersistenceError.DB_URL_MISSING

    def test_required_database_is_strict(self):
        backend = build_backend({"DATA_STORE_MODE": "required_database",
                                 "SQLALCHEMY_DATABASE_URI": "sqlite://"})
        assert isinstance(backend, DatabaseBackend)
        assert backend.strict is True

    def test_preferred_database_falls_back_to_file(self, tmp_path):
        with_url = build_backend({"DATA_STORE_MODE": "preferred_database",
                                  "SQLALCHEMY_DATABASE_URI": "sqlite://"})
        assert isinstance(with_url, DatabaseBackend) and with_url.strict is False
        without = build_backend({"DATA_STORE_MODE": "preferred_database", "DATA_STORE_DIR": str(tmp_path)})
        assert isinstance(without, FileBackend)

    @pytest.mark.parametrize("config", [
        {"DATA_STORE_MODE": "cloud"},
        {"DATA_STORE_MODE": "file", "DATA_STORE_BACKEND": "s3"},
    ])
    def test_unknown_values(self, config):
        with pytest.raises(ValueError):
            build_backend(config)


# ═════════════════════════════════════════════════════════════════════════════
# Repositories
# ═════════════════════════════════════════════════════════════════════════════


class TestRepositories:
    def test_users_are_seeded(self):
        users = get_repositories().users.read_all()
        roles = {u["role_type"] for u in users}
        assert {"ADMIN", "FINANCE_GOVERNANCE_USER", "PROJECT_GOVERNANCE_USER",
                "PROJECT_MANAGEMENT_HUB_ADMIN"} <= roles

    def test_change_management_defaults(self):
        store = get_repositories().change_management.read_all()
        assert store["change_requests"] == []
        assert store["thresholds"]["schedule_impact_threshold_days"] == 14
        assert len(store["templates"]) == 3

    def test_change_management_normalises_partial_payload(self):
        repos = Repositories(backend=MemoryBackend(), change_thresholds={"budget_impact_threshold_abs": 1})
        repos.backend.write("change-requests", {"change_requests": "bad", "thresholds": {"extra": 2}})
        store = repos.change_management.read_all()
        assert store["change_requests"] == []
        assert store["thresholds"] == {"budget_impact_threshold_abs": 1, "extra": 2}

    def test_non_list_collection_reads_as_empty(self):
        repos = Repositories(backend=MemoryBackend())
        repos.backend.write("submissions", {"oops": True})
        assert repos.submissions.read_all() == []

    def test_audit_log_keeps_newest_entries(self):
        repos = Repositories(backend=MemoryBackend(), audit_max_entries=3)
        for n in range(5):
            repos.audit_log.append({"id": n})
        assert [e["id"] for e in repos.audit_log.read_all()] == [2, 3, 4]


class TestGovernanceAuditLog:
    def test_append_cleans_fields(self):
        entry = audit_log.append_governance_audit_log(
            area="WORKFLOW", action="TEST", entity_type="submission", entity_id="SP-1",
            actor_name="  Ann ", actor_email=" ANN@corp.com ", details=" ",
            metadata={"count": 2, "nested": {"a": 1}, "ok": True},
        )
        assert entry["actor_name"] == "Ann"
        assert entry["actor_email"] == "ann@corp.com"
        assert entry["details"] is None
        assert entry["metadata"] == {"count": 2, "ok": True}
        assert audit_log.list_governance_audit_log()[0]["id"] == entry["id"]

    def test_failed_write_does_not_raise(self, monkeypatch):
        def _fail(entry):
            raise PersistenceError(PersistenceError.DB_WRITE_FAILED, "down")

        monkeypatch.setattr(get_repositories().audit_log, "append", _fail)
        assert audit_log.append_governance_audit_log(area="WORKFLOW", action="X", entity_type="t") is None

    def test_limit_is_clamped(self):
        for n in range(3):
            audit_log.append_governance_audit_log(area="WORKFLOW", action=f"A{n}", entity_type="t")
        assert len(audit_log.list_governance_audit_log(limit=0)) == 1
        assert len(audit_log.list_governance_audit_log(limit=5000)) == 3
