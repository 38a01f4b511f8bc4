import pytest

from shipyard.envfile import EnvFile, mask_value
from shipyard.errors import ValidationError


def test_set_get_unset(tmp_path):
    env = EnvFile(tmp_path)
    assert env.get_all() == {}

    env.set("DATABASE_URL", "postgres://db/app")
    env.set("DEBUG", "1")
    assert env.get("DATABASE_URL") == "postgres://db/app"
    assert env.get_all() == {"DATABASE_URL": "postgres://db/app", "DEBUG": "1"}

    env.set("DEBUG", "0")
    assert env.get("DEBUG") == "0"

    assert env.unset("DEBUG") is True
    assert env.unset("DEBUG") is False
    assert env.get_all() == {"DATABASE_URL": "postgres://db/app"}


def test_value_with_spaces_survives(tmp_path):
    env = EnvFile(tmp_path)
    env.set("GREETING", "hello world")
    assert EnvFile(tmp_path).get("GREETING") == "hello world"


@pytest.mark.parametrize("key", ["1ABC", "WITH-DASH", "has space", ""])
def test_invalid_keys_are_rejected(tmp_path, key):
    with pytest.raises(ValidationError):
        EnvFile(tmp_path).set(key, "x")
    assert not (tmp_path / ".env").exists()


def test_update_keeps_other_keys(tmp_path):
    env = EnvFile(tmp_path)
    env.set("A", "1")
    env.update({"B": "2", "PORT": 3000})
    assert env.get_all() == {"A": "1", "B": "2", "PORT": "3000"}


def test_backup_and_restore_latest(tmp_path):
    env = EnvFile(tmp_path)
    env.set("TOKEN", "first")
    env.backup()
    env.set("TOKEN", "second")
    latest = env.backup()
    env.set("TOKEN", "third")

    assert env.backups()[-1] == latest
    assert env.restore() == latest
    assert env.get("TOKEN") == "second"


def test_restore_named_backup(tmp_path):
    env = EnvFile(tmp_path)
    env.set("MODE", "a")
    first = env.backup()
    env.set("MODE", "b")

    env.restore(first.name)
    assert env.get("MODE") == "a"


def test_restore_missing_backup_raises(tmp_path):
    env = EnvFile(tmp_path)
    with pytest.raises(ValidationError):
        env.restore()
    with pytest.raises(ValidationError):
        env.restore(str(tmp_path / ".env.backup.nope"))


def test_backup_without_file_raises(tmp_path):
    with pytest.raises(ValidationError):
        EnvFile(tmp_path).backup()


def test_mask_value():
    assert mask_value("API_KEY", "abc") == "***"
    assert mask_value("db_password", "abc") == "***"
    assert mask_value("SESSION_SECRET", "abc") == "***"
    assert mask_value("GITHUB_TOKEN", "abc") == "***"
    assert mask_value("NODE_ENV", "production") == "production"
