import pytest
from pydantic import ValidationError as PydanticValidationError

from sessionvault.config import Settings, get_settings, reset_settings_cache
from sessionvault.service.runtime import Runtime, _mask_url_password, build_store
from sessionvault.storage.memory import MemoryKeyValueStore
from sessionvault.storage.redis_cache import RedisKeyValueStore


class TestSettings:
    def test_defaults(self):
        settings = Settings(jwt_secret="s" * 40)
        assert settings.refresh_token_ttl_seconds == 7 * 24 * 60 * 60
        assert settings.max_sessions_per_user == 5
        assert settings.max_failed_login_attempts == 5
        assert settings.lockout_duration_seconds == 15 * 60
        assert settings.access_token_ttl_minutes == 15

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("MAX_SESSIONS_PER_USER", "3")
        monkeypatch.setenv("REFRESH_TOKEN_TTL_SECONDS", "600")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
        settings = Settings.from_env()

        assert settings.max_sessions_per_user == 3
        assert settings.refresh_token_ttl_seconds == 600
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]

    @pytest.mark.parametrize(
        "field", ["max_sessions_per_user", "refresh_token_ttl_seconds", "lockout_duration_seconds"]
    )
    def test_rejects_non_positive_limits(self, field):
        with pytest.raises(PydanticValidationError):
            Settings(jwt_secret="s" * 40, **{field: 0})

    def test_rejects_non_positive_timeout(self):
        with pytest.raises(PydanticValidationError):
            Settings(jwt_secret="s" * 40, redis_operation_timeout=0)

    def test_generated_jwt_secret_is_persisted(self, tmp_path):
        first = Settings(jwt_secret=None, shared_fs_root=str(tmp_path))
        second = Settings(jwt_secret=None, shared_fs_root=str(tmp_path))

        assert len(first.jwt_secret) >= 32
        assert first.jwt_secret == second.jwt_secret
        assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret

    def test_shared_root_from_dotenv_holds_jwt_secret(self, monkeypatch, tmp_path):
        fs_root = tmp_path / "shared"
        (tmp_path / ".env").write_text(f"SHARED_FS_ROOT={fs_root}\n")
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("SHARED_FS_ROOT", raising=False)
        monkeypatch.delenv("JWT_SECRET", raising=False)

        settings = Settings.from_env()

        assert settings.shared_fs_root == str(fs_root)
        assert (fs_root / ".jwt_secret").read_text() == settings.jwt_secret

    def test_settings_cache(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        monkeypatch.setenv("MAX_SESSIONS_PER_USER", "2")
        assert get_settings() is first
        reset_settings_cache()
        assert get_settings().max_sessions_per_user == 2


class TestBuildStore:
    def test_memory_store_when_configured(self):
        settings = Settings(jwt_secret="s" * 40, use_memory_cache=True)
        assert isinstance(build_store(settings), MemoryKeyValueStore)

    def test_unreachable_redis_requires_fallback_flag(self, monkeypatch):
        def refuse(self):
            raise ConnectionError("connection refused")

        monkeypatch.setattr(RedisKeyValueStore, "verify_connection", refuse)
        strict = Settings(jwt_secret="s" * 40, redis_url="redis://localhost:1/0")
        with pytest.raises(RuntimeError):
            build_store(strict)

        relaxed = Settings(
            jwt_secret="s" * 40, redis_url="redis://localhost:1/0", allow_redis_fallback_dev=True
        )
        assert isinstance(build_store(relaxed), MemoryKeyValueStore)

    def test_reachable_redis_is_used(self, monkeypatch):
        monkeypatch.setattr(RedisKeyValueStore, "verify_connection", lambda self: None)
        settings = Settings(jwt_secret="s" * 40, redis_url="redis://localhost:6379/0")
        assert isinstance(build_store(settings), RedisKeyValueStore)

    def test_password_masked_in_logs(self):
        assert (
            _mask_url_password("redis://:hunter2@cache:6379/0") == "redis://:***@cache:6379/0"
        )
        assert _mask_url_password("redis://cache:6379/0") == "redis://cache:6379/0"


class TestRuntime:
    def test_admin_is_seeded(self):
        settings = Settings(
            jwt_secret="s" * 40,
            use_memory_cache=True,
            admin_email="Admin@Example.com",
            admin_password="admin-password",
        )
        runtime = Runtime(settings)
        admin = runtime.directory.verify_credentials("admin@example.com", "admin-password")
        assert admin is not None
        assert admin.role == "admin"

    def test_limits_flow_into_managers(self):
        settings = Settings(
            jwt_secret="s" * 40,
            use_memory_cache=True,
            max_sessions_per_user=2,
            max_failed_login_attempts=7,
        )
        runtime = Runtime(settings)
        assert runtime.refresh_tokens.max_sessions == 2
        assert runtime.lockout.max_attempts == 7
        assert runtime.auth.tokens is runtime.tokens
