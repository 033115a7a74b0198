from expense_api.core.config import Settings


def test_settings_defaults() -> None:
    config = Settings(_env_file=None)

    assert config.blob_backend == "memory"
    assert config.blob_container == "voice-tokens"
    assert config.auth_email_header == "X-User-Email"
    assert config.blob_conditional_writes is True


def test_settings_split_origins_and_normalize_backend() -> None:
    config = Settings(
        _env_file=None,
        cors_allow_origins="https://app.example.com, https://admin.example.com,",
        blob_backend=" S3 ",
    )

    assert config.cors_allow_origins == ["https://app.example.com", "https://admin.example.com"]
    assert config.blob_backend == "s3"


def test_settings_split_origins_from_environment(monkeypatch) -> None:
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://app.example.com,https://admin.example.com")
    monkeypatch.setenv("BLOB_BACKEND", "S3")

    config = Settings(_env_file=None)

    assert config.cors_allow_origins == ["https://app.example.com", "https://admin.example.com"]
    assert config.blob_backend == "s3"
