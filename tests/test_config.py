import json

import pytest

from cabinet.config import CabinetConfig, ConfigProvider, FileSystemStorageConfig, S3StorageConfig
from cabinet.errors import ConfigError


def raw_config(**overrides):
    data = {
        "storage": {"type": "filesystem", "file_path": "/tmp/f", "thumbnail_path": "/tmp/t"},
        "watchers": [
            {
                "type": "four-chan",
                "name": "wallpapers",
                "cloudflare": {"clearance": "token"},
                "entries": [
                    {
                        "boards": ["wg"],
                        "target": "title",
                        "search_archive": True,
                        "queries": [
                            {"query": "minimal", "case_insensitive": True},
                            {"query": "^dark", "type": "regex", "ignore_case": True, "exclude": True},
                        ],
                    }
                ],
            }
        ],
        "crawling": {"interval": "*/5 * * * *", "delete_obsolete": True},
    }
    data.update(overrides)
    return data


def test_parses_full_configuration():
    config = CabinetConfig.from_dict(raw_config())

    assert isinstance(config.storage, FileSystemStorageConfig)
    (watcher,) = config.watchers
    assert watcher.name == "wallpapers"
    assert watcher.cloudflare.clearance == "token"
    (e,) = watcher.entries
    assert e.boards == ("wg",) and e.target == "title" and e.search_archive
    assert e.queries[1].type == "regex" and e.queries[1].exclude
    assert config.crawling.interval == "*/5 * * * *"
    assert config.crawling.delete_obsolete
    assert config.crawling.watcher_sync == "keep"
    assert config.attachment.download_throttle.failover == 60000


def test_s3_storage_requires_s3_uris():
    storage = {"type": "s3", "file_bucket_uri": "s3://files", "thumbnail_bucket_uri": "s3://thumbs/p"}
    config = CabinetConfig.from_dict(raw_config(storage=storage))
    assert isinstance(config.storage, S3StorageConfig)

    storage["file_bucket_uri"] = "https://files"
    with pytest.raises(ConfigError):
        CabinetConfig.from_dict(raw_config(storage=storage))


@pytest.mark.parametrize(
    "overrides",
    [
        {"crawling": {"interval": "every five minutes"}},
        {"crawling": {"interval": 0}},
        {"crawling": {"watcher_sync": "merge"}},
        {"storage": {"type": "ftp"}},
        {"watchers": [{"type": "eight-chan", "name": "x", "entries": []}]},
    ],
)
def test_rejects_invalid_configuration(overrides):
    with pytest.raises(ConfigError):
        CabinetConfig.from_dict(raw_config(**overrides))


def test_watcher_config_serializes_without_secrets():
    (watcher,) = CabinetConfig.from_dict(raw_config()).watchers
    stored = watcher.to_dict()
    assert stored["name"] == "wallpapers"
    assert "cloudflare" not in stored
    assert stored["entries"][0]["queries"][0]["query"] == "minimal"


def test_reload_notifies_listeners_only_for_valid_files(tmp_path):
    path = tmp_path / "cabinet.config.json"
    path.write_text(json.dumps(raw_config()))
    provider = ConfigProvider(path)
    provider.load()
    changes = []
    provider.on_change(lambda: changes.append(provider.crawling.interval))

    path.write_text("{ not json")
    assert provider.reload() is False
    assert provider.crawling.interval == "*/5 * * * *"

    path.write_text(json.dumps(raw_config(crawling={"interval": 60000})))
    assert provider.reload() is True
    assert changes == [60000]


def test_missing_file_is_a_config_error(tmp_path):
    with pytest.raises(ConfigError):
        ConfigProvider(tmp_path / "absent.json").load()
    with pytest.raises(ConfigError):
        ConfigProvider(tmp_path / "absent.json").config
