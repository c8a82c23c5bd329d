"""Tests for environment configuration and app assembly."""

import logging

import pytest
from fastapi.testclient import TestClient

from config import Config, ConfigError, build_tenant_resolver, load_config, load_tenants_file
from logging_config import JSONFormatter, SupabaseHandler, flush_logs, setup_logging
from main import build_stores, create_app
from oauth.stores import SupabaseTtlStore, TtlStore
from oauth.tenants import ResourceTenantResolver, SingleTenantResolver


class TestConfig:

    def test_defaults(self, proxy_env) -> None:
        config = Config(proxy_env)

        assert config.proxy_base_url == "https://proxy.example.com"
        assert config.callback_url == "https://proxy.example.com/callback"
        assert config.port == 3000
        assert config.scope_policy == "namespaced"
        assert config.state_ttl_seconds == 600
        assert config.provider_timeout_seconds == 10
        assert config.store_backend == "memory"
        assert config.allowed_resources is None

    def test_trailing_slash_stripped(self) -> None:
        assert Config({"PROXY_BASE_URL": "https://proxy.example.com/"}).callback_url == (
            "https://proxy.example.com/callback"
        )

    def test_missing_base_url(self) -> None:
        with pytest.raises(ConfigError, match="PROXY_BASE_URL"):
            Config({}).validate()

    def test_load_config_reads_environment(self, monkeypatch) -> None:
        monkeypatch.setenv("PROXY_BASE_URL", "https://from-env.example.com")
        assert load_config().proxy_base_url == "https://from-env.example.com"

    def test_single_tenant(self, proxy_env) -> None:
        tenant = Config(proxy_env).single_tenant()
        assert tenant.client_id == "proxy-app-id"
        assert tenant.authorize_url.startswith("https://login.microsoftonline.com/")

    def test_authority_override(self, proxy_env) -> None:
        proxy_env["ENTRA_AUTHORITY"] = "https://login.microsoftonline.us/gov-tenant"
        tenant = Config(proxy_env).single_tenant()
        assert tenant.token_url == "https://login.microsoftonline.us/gov-tenant/oauth2/v2.0/token"

    def test_no_tenant(self) -> None:
        assert Config({"PROXY_BASE_URL": "https://p"}).single_tenant() is None

    def test_partial_tenant_is_error(self) -> None:
        with pytest.raises(ConfigError, match="ENTRA_CLIENT_SECRET"):
            Config({"ENTRA_TENANT_ID": "t", "ENTRA_CLIENT_ID": "c"}).single_tenant()

    def test_allowed_resources(self, proxy_env) -> None:
        proxy_env["ENTRA_ALLOWED_RESOURCES"] = "https://a.example, https://b.example,"
        resolver = build_tenant_resolver(Config(proxy_env))

        assert isinstance(resolver, SingleTenantResolver)
        assert resolver.resolve("https://a.example") is not None
        assert resolver.resolve("https://c.example") is None

    def test_supabase_backend_requires_credentials(self, proxy_env) -> None:
        proxy_env["STORE_BACKEND"] = "supabase"
        with pytest.raises(ConfigError, match="SUPABASE_URL"):
            Config(proxy_env).validate()

    def test_unknown_backend(self, proxy_env) -> None:
        proxy_env["STORE_BACKEND"] = "redis"
        with pytest.raises(ConfigError, match="STORE_BACKEND"):
            Config(proxy_env).validate()


class TestTenantsFile:

    def test_load(self, tenants_file) -> None:
        tenants = load_tenants_file(tenants_file)

        assert set(tenants) == {"https://api.example.com", "https://other.example.com"}
        assert tenants["https://other.example.com"].token_url == (
            "https://login.microsoftonline.us/tenant-b/oauth2/v2.0/token"
        )

    def test_resolver_from_file(self, proxy_env, tenants_file) -> None:
        proxy_env["ENTRA_TENANTS_FILE"] = str(tenants_file)
        resolver = build_tenant_resolver(Config(proxy_env))

        assert isinstance(resolver, ResourceTenantResolver)
        assert resolver.resolve("https://api.example.com").client_id == "app-a"

    def test_missing_file(self, tmp_path) -> None:
        with pytest.raises(ConfigError):
            load_tenants_file(tmp_path / "missing.json")

    def test_missing_field(self, tmp_path) -> None:
        path = tmp_path / "tenants.json"
        path.write_text('{"https://api.example.com": {"tenant_id": "t"}}')
        with pytest.raises(ConfigError, match="client_id"):
            load_tenants_file(path)

    def test_empty_file(self, tmp_path) -> None:
        path = tmp_path / "tenants.json"
        path.write_text("{}")
        with pytest.raises(ConfigError):
            load_tenants_file(path)


class TestBuildStores:

    def test_memory_backend(self, proxy_env) -> None:
        clients, authorizations, codes = build_stores(Config(proxy_env))

        assert isinstance(clients, TtlStore) and clients.ttl_seconds is None
        assert authorizations.ttl_seconds == 600
        assert codes.ttl_seconds == 600

    def test_supabase_backend(self, proxy_env) -> None:
        proxy_env.update({"STORE_BACKEND": "supabase", "STATE_TTL_SECONDS": "300"})
        clients, authorizations, codes = build_stores(Config(proxy_env), supabase_client=object())

        assert all(isinstance(store, SupabaseTtlStore) for store in (clients, authorizations, codes))
        assert clients.ttl_seconds is None
        assert codes.ttl_seconds == 300

    def test_supabase_backend_without_client(self, proxy_env) -> None:
        proxy_env["STORE_BACKEND"] = "supabase"
        with pytest.raises(ConfigError):
            build_stores(Config(proxy_env))

    def test_create_app_rejects_invalid_config(self) -> None:
        with pytest.raises(ConfigError):
            create_app(Config({}))


class TestLogging:

    def test_json_formatter_extracts_tag(self) -> None:
        record = logging.LogRecord("oauth.flow", logging.INFO, __file__, 10, "[TOKEN] exchange ok", None, None)
        entry = JSONFormatter("entra-mcp-proxy").format(record)

        assert entry["tag"] == "TOKEN"
        assert entry["message"] == "exchange ok"
        assert entry["service"] == "entra-mcp-proxy"

    def test_json_formatter_without_tag(self) -> None:
        record = logging.LogRecord("x", logging.WARNING, __file__, 1, "plain message", None, None)
        entry = JSONFormatter().format(record)
        assert entry["tag"] is None
        assert entry["level"] == "WARNING"

    def test_setup_logging_stderr_only(self) -> None:
        root = setup_logging(level="DEBUG")
        try:
            assert root.level == logging.DEBUG
            assert len(root.handlers) == 1
            assert logging.getLogger("httpx").level == logging.WARNING
        finally:
            root.handlers.clear()
            root.setLevel(logging.WARNING)

    def test_json_formatter_copies_request_fields(self) -> None:
        record = logging.LogRecord("main", logging.INFO, __file__, 1, "[REQUEST] GET /health -> 200", None, None)
        record.method = "GET"
        record.path = "/health"
        record.status = 200
        record.duration_ms = 1.5
        entry = JSONFormatter().format(record)

        assert entry["extra"]["path"] == "/health"
        assert entry["extra"]["status"] == 200
        assert entry["extra"]["logger"] == "main"


class RecordingLogClient:
    """Stands in for the Supabase client: table(...).insert(rows).execute()."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.batches = []
        self.tables = []

    def table(self, name):
        self.tables.append(name)
        return self

    def insert(self, rows):
        self._pending = rows
        return self

    def execute(self):
        if self.fail:
            raise RuntimeError("supabase unavailable")
        self.batches.append(self._pending)


def make_record(message: str) -> logging.LogRecord:
    return logging.LogRecord("oauth.flow", logging.INFO, __file__, 1, message, None, None)


class TestSupabaseHandler:

    @pytest.fixture
    def log_client(self):
        return RecordingLogClient()

    @pytest.fixture
    def handler(self, log_client):
        handler = SupabaseHandler(log_client, "entra-mcp-proxy", instance="proxy-1", batch_size=3, flush_interval=3600)
        yield handler
        handler.close()

    def test_full_batch_is_sent(self, handler, log_client) -> None:
        for i in range(3):
            handler.emit(make_record(f"[DCR] client {i}"))

        assert len(log_client.batches) == 1
        batch = log_client.batches[0]
        assert [entry["message"] for entry in batch] == ["client 0", "client 1", "client 2"]
        assert all(entry["tag"] == "DCR" and entry["instance"] == "proxy-1" for entry in batch)
        assert log_client.tables == ["logs"]

    def test_flush_drains_in_batches(self, handler, log_client) -> None:
        handler.batch_size = 100
        for i in range(5):
            handler.emit(make_record(f"message {i}"))
        handler.batch_size = 2

        handler.flush()

        assert [len(batch) for batch in log_client.batches] == [2, 2, 1]

    def test_failed_insert_reported_on_stderr(self, capsys) -> None:
        handler = SupabaseHandler(RecordingLogClient(fail=True), "entra-mcp-proxy", batch_size=10, flush_interval=3600)
        try:
            handler.emit(make_record("[TOKEN] exchange ok"))
            handler.emit(make_record("[TOKEN] exchange ok"))
            handler.flush()
        finally:
            handler.close()

        err = capsys.readouterr().err
        assert "Dropped 2 log records" in err
        assert "supabase unavailable" in err

    def test_setup_logging_attaches_handler(self, log_client) -> None:
        root = setup_logging(supabase_client=log_client, level="INFO", instance="proxy-1")
        try:
            assert any(isinstance(h, SupabaseHandler) for h in root.handlers)
            flush_logs()
            # The startup message itself is shipped
            assert log_client.batches[0][0]["tag"] == "STARTUP"
        finally:
            for h in root.handlers:
                h.close()
            root.handlers.clear()
            root.setLevel(logging.WARNING)

    def test_lifespan_shutdown_flushes(self, proxy_env, log_client) -> None:
        handler = SupabaseHandler(log_client, "entra-mcp-proxy", batch_size=100, flush_interval=3600)
        root = logging.getLogger()
        previous_level = root.level
        root.setLevel(logging.INFO)
        root.addHandler(handler)
        try:
            with TestClient(create_app(Config(proxy_env))) as client:
                client.get("/health")
                assert log_client.batches == []
        finally:
            root.removeHandler(handler)
            root.setLevel(previous_level)
            handler.close()

        messages = [entry["message"] for batch in log_client.batches for entry in batch]
        assert any(message.startswith("GET /health -> 200") for message in messages)
