import pytest

from config import DEFAULTS, load_config


def test_missing_file_gives_defaults(tmp_path, monkeypatch):
    monkeypatch.delenv("LABSYNC_BASE_URL", raising=False)
    cfg = load_config(str(tmp_path / "absent.yaml"))
    assert cfg == DEFAULTS
    assert cfg is not DEFAULTS


def test_yaml_overrides_are_merged(tmp_path, monkeypatch):
    monkeypatch.delenv("LABSYNC_BASE_URL", raising=False)
    path = tmp_path / "labsync.yaml"
    path.write_text("remote:\n  timeout: 9\nqueue:\n  onConflict: merge\n")

    cfg = load_config(str(path))

    assert cfg["remote"]["timeout"] == 9
    assert cfg["remote"]["baseUrl"] == DEFAULTS["remote"]["baseUrl"]
    assert cfg["queue"]["onConflict"] == "merge"
    assert cfg["queue"]["maxSyncAttempts"] == 5


def test_env_overrides_base_url(tmp_path, monkeypatch):
    monkeypatch.setenv("LABSYNC_BASE_URL", "http://hospital.example")
    cfg = load_config(str(tmp_path / "absent.yaml"))
    assert cfg["remote"]["baseUrl"] == "http://hospital.example"


def test_unknown_conflict_policy_is_rejected(tmp_path):
    path = tmp_path / "labsync.yaml"
    path.write_text("queue:\n  onConflict: append\n")
    with pytest.raises(ValueError, match="onConflict"):
        load_config(str(path))
