from pipewright.cache import DEFAULT_CACHE_DIR
from pipewright.settings import Settings, parse_runners


def test_defaults_from_empty_environment():
    settings = Settings.from_env({})
    assert settings.cache_dir == DEFAULT_CACHE_DIR
    assert settings.max_workers is None
    assert settings.redis_url is None
    assert settings.runners == {}


def test_environment_overrides():
    settings = Settings.from_env(
        {
            "PIPEWRIGHT_DATABASE_URL": "sqlite://",
            "PIPEWRIGHT_CACHE_MAX_BYTES": "1048576",
            "PIPEWRIGHT_MAX_WORKERS": "3",
            "PIPEWRIGHT_RUNNERS": "ubuntu-latest=ubuntu:22.04, alpine=alpine:3",
            "REDIS_URL": "redis://localhost:6379/0",
            "PIPEWRIGHT_QUEUE": "events",
        }
    )
    assert settings.database_url == "sqlite://"
    assert settings.cache_max_bytes == 1048576
    assert settings.max_workers == 3
    assert settings.runners == {"ubuntu-latest": "ubuntu:22.04", "alpine": "alpine:3"}
    assert settings.redis_url == "redis://localhost:6379/0"
    assert settings.queue_name == "events"


def test_parse_runners_skips_malformed_items():
    assert parse_runners("broken,=img,tag=,ok=image:1") == {"ok": "image:1"}
    assert parse_runners("") == {}
