import os

import pytest

from moltkeeper.config.settings import GatewayEnvironment, KeeperSettings
from moltkeeper.core import object_store
from moltkeeper.core.commands import CommandResult, run_command
from moltkeeper.core.fileio import atomic_write_text, parse_json
from moltkeeper.core.object_store import RcloneObjectStore, configure_rclone, render_rclone_config
from moltkeeper.exceptions import ObjectStoreConfigError


@pytest.fixture
def rclone_calls(monkeypatch):
    calls = []

    async def _run_command(cmd, timeout, input_text=None, env=None):
        calls.append({"cmd": list(cmd), "input": input_text})
        if cmd[1] == "lsf":
            return CommandResult(success=True, returncode=0, stdout="openclaw.json\n\n")
        if cmd[1] == "cat":
            return CommandResult(success=True, returncode=0, stdout="2026-01-01T00:00:00+00:00\n")
        return CommandResult(success=True, returncode=0)

    monkeypatch.setattr(object_store, "run_command", _run_command)
    return calls


@pytest.mark.asyncio
async def test_rclone_commands(rclone_calls, tmp_path):
    store = RcloneObjectStore("r2:moltbot-data", config_file=tmp_path / "rclone.conf")

    assert await store.list("openclaw/") == ["openclaw.json"]
    assert await store.exists("openclaw/openclaw.json") is True
    assert await store.cat(".last-sync") == "2026-01-01T00:00:00+00:00\n"
    await store.copy("", tmp_path / "cfg", includes=("clawdbot.json", "*.db"))
    await store.sync(tmp_path, "openclaw/", excludes=("*.lock",))
    await store.put(".last-sync", "now\n")

    copy_cmd = rclone_calls[3]["cmd"]
    assert copy_cmd[:3] == ["rclone", "copy", "r2:moltbot-data/"]
    assert copy_cmd.count("--include") == 2
    assert copy_cmd[-2:] == ["--config", str(tmp_path / "rclone.conf")]

    sync_cmd = rclone_calls[4]["cmd"]
    assert sync_cmd[:4] == ["rclone", "sync", f"{tmp_path}/", "r2:moltbot-data/openclaw/"]
    assert "--s3-no-check-bucket" in sync_cmd
    assert sync_cmd[sync_cmd.index("--exclude") + 1] == "*.lock"

    assert rclone_calls[5]["cmd"][1:3] == ["rcat", "r2:moltbot-data/.last-sync"]
    assert rclone_calls[5]["input"] == "now\n"


def test_render_rclone_config():
    env = GatewayEnvironment(r2_access_key_id="ak", r2_secret_access_key="sk", cf_account_id="acct")

    text = render_rclone_config(env)

    assert text.startswith("[r2]\ntype = s3\nprovider = Cloudflare\n")
    assert "endpoint = https://acct.r2.cloudflarestorage.com" in text


def test_configure_rclone(settings, r2_env):
    assert configure_rclone(settings, GatewayEnvironment()) is False
    assert not settings.rclone_config_file.exists()

    assert configure_rclone(settings, r2_env) is True
    assert os.stat(settings.rclone_config_file).st_mode & 0o777 == 0o600


def test_configure_rclone_write_failure(settings, r2_env, monkeypatch):
    def _fail(*args, **kwargs):
        raise PermissionError("read-only filesystem")

    monkeypatch.setattr(object_store, "atomic_write_text", _fail)

    with pytest.raises(ObjectStoreConfigError) as excinfo:
        configure_rclone(settings, r2_env)
    assert "read-only" in excinfo.value.details


# =============================================================================
# Commands and files
# =============================================================================

@pytest.mark.asyncio
async def test_run_command_missing_binary():
    result = await run_command(["/nonexistent/moltkeeper-binary"], timeout=1)

    assert result.success is False
    assert result.returncode is None


def test_atomic_write_cleans_up_on_failure(tmp_path, monkeypatch):
    target = tmp_path / "openclaw.json"
    target.write_text('{"ok": true}')

    def _fail(src, dst):
        raise OSError("rename failed")

    monkeypatch.setattr(os, "replace", _fail)
    with pytest.raises(OSError):
        atomic_write_text(target, "{}")

    assert [p.name for p in tmp_path.iterdir()] == ["openclaw.json"]
    assert target.read_text() == '{"ok": true}'


def test_parse_json_tolerates_garbage():
    assert parse_json(None) is None
    assert parse_json("  ") is None
    assert parse_json("{broken") is None
    assert parse_json('{"a": 1}') == {"a": 1}


# =============================================================================
# Settings
# =============================================================================

def test_environment_blank_values_are_absent():
    env = GatewayEnvironment.from_env({"OPENAI_API_KEY": "  ", "R2_BUCKET_NAME": "", "DEBUG_ROUTES": "true"})

    assert env.openai_api_key is None
    assert env.r2_bucket_name == "moltbot-data"
    assert env.debug_routes is True
    assert env.r2_configured is False


def test_settings_read_keeper_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("KEEPER_CONFIG_DIR", str(tmp_path / "cfg"))
    monkeypatch.setenv("KEEPER_WORKSPACE_DIR", str(tmp_path / "ws"))
    monkeypatch.setenv("KEEPER_SYNC_INTERVAL", "5")

    settings = KeeperSettings()

    assert settings.config_file == tmp_path / "cfg" / "openclaw.json"
    assert settings.skills_dir == tmp_path / "ws" / "skills"
    assert settings.auth_store_file == tmp_path / "cfg" / "agents" / "main" / "agent" / "auth-profiles.json"
    assert settings.sync_interval == 5.0
